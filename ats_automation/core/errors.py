from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class AutomationErrorCode:
    code: str
    message: str


AUTOMATION_001_CONFIG_INVALID = AutomationErrorCode(
    "AUTOMATION_001_CONFIG_INVALID",
    "Automation setting is missing or invalid.",
)
AUTOMATION_002_SETTING_REJECTED = AutomationErrorCode(
    "AUTOMATION_002_SETTING_REJECTED",
    "Setting value was rejected by validation.",
)
AUTOMATION_101_STORE_UNAVAILABLE = AutomationErrorCode(
    "AUTOMATION_101_STORE_UNAVAILABLE",
    "Application store query or update failed.",
)
AUTOMATION_201_AUDIT_EMIT_FAILED = AutomationErrorCode(
    "AUTOMATION_201_AUDIT_EMIT_FAILED",
    "Audit record could not be written.",
)
AUTOMATION_301_IRREVERSIBLE_STEP_FAILED = AutomationErrorCode(
    "AUTOMATION_301_IRREVERSIBLE_STEP_FAILED",
    "Irreversible deletion step failed; manual reconciliation required.",
)
AUTOMATION_404_TASK_NOT_FOUND = AutomationErrorCode(
    "AUTOMATION_404_TASK_NOT_FOUND",
    "Requested automation task was not found.",
)


class AutomationError(RuntimeError):
    default_err = AUTOMATION_001_CONFIG_INVALID

    def __init__(self, detail: str = "", *, err: AutomationErrorCode | None = None) -> None:
        err = err or self.default_err
        suffix = f" detail={detail}" if detail else ""
        super().__init__(f"{err.code}: {err.message}{suffix}")
        self.err = err
        self.detail = detail


class ConfigurationError(AutomationError):
    default_err = AUTOMATION_001_CONFIG_INVALID


class SettingValidationError(ConfigurationError):
    default_err = AUTOMATION_002_SETTING_REJECTED

    def __init__(self, key: str, detail: str) -> None:
        super().__init__(f"key={key} {detail}")
        self.key = key


class TransientStoreError(AutomationError):
    default_err = AUTOMATION_101_STORE_UNAVAILABLE


class AuditEmissionError(AutomationError):
    default_err = AUTOMATION_201_AUDIT_EMIT_FAILED


class IrreversibleOperationError(AutomationError):
    """
    Raised when a step of permanent deletion fails part way.

    Rows already deleted are not restored; `step` and `attempted_ids` tell the
    operator exactly what has to be reconciled by hand.
    """

    default_err = AUTOMATION_301_IRREVERSIBLE_STEP_FAILED

    def __init__(self, step: str, attempted_ids: list[Any], cause: BaseException | None = None) -> None:
        super().__init__(f"step={step} attempted_ids={list(attempted_ids)} cause={cause}")
        self.step = step
        self.attempted_ids = list(attempted_ids)
        self.cause = cause


class UnknownTaskError(AutomationError):
    default_err = AUTOMATION_404_TASK_NOT_FOUND
