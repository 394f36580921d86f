from pathlib import Path


class MartError(Exception):
    def __init__(self, message):
        Exception.__init__(self, message)


class ConfigError(MartError):
    def __init__(self, message):
        MartError.__init__(self, message)


class ConfigFileError(ConfigError):
    def __init__(self, config_file):
        message = f"No User or Base Config File : {config_file}"
        ConfigError.__init__(self, message)


class ProjectError(MartError):
    def __init__(self, message: str):
        MartError.__init__(self, message)


class ProjectDatabaseMissing(ProjectError):
    def __init__(self, db_path: Path):
        message = f"Project database not found: {db_path}"
        ProjectError.__init__(self, message)


class SourceDataError(MartError):
    def __init__(self, message: str):
        MartError.__init__(self, message)


class ConcurrentRunError(MartError):
    def __init__(self, account_ids: list[int], holders: list[str]):
        self.account_ids = account_ids
        self.holders = holders
        shown = ", ".join(str(a) for a in account_ids[:10])
        more = f" (+{len(account_ids) - 10} more)" if len(account_ids) > 10 else ""
        message = f"Accounts already locked by run(s) {', '.join(sorted(set(holders)))}: {shown}{more}"
        MartError.__init__(self, message)


# ---------------------------------------------------------------------------
# Per-account failures: the coordinator records these and moves on.
# ---------------------------------------------------------------------------


class MaterializationError(MartError):
    def __init__(self, account_id: int, message: str):
        self.account_id = account_id
        MartError.__init__(self, message)


class CalendarGapError(MaterializationError):
    def __init__(self, account_id: int | None, missing_day_key: int, start_key: int, end_key: int):
        self.missing_day_key = missing_day_key
        self.start_key = start_key
        self.end_key = end_key
        message = f"Calendar is missing day {missing_day_key} inside required range {start_key}..{end_key}"
        MaterializationError.__init__(self, account_id, message)


class MissingOpeningDataError(MaterializationError):
    def __init__(self, account_id: int, message: str | None = None):
        message = message or f"Account {account_id} has movements but no opening balance/date"
        MaterializationError.__init__(self, account_id, message)


class MovementBeforeOpeningError(MissingOpeningDataError):
    def __init__(self, account_id: int, first_movement_key: int, opening_key: int):
        self.first_movement_key = first_movement_key
        self.opening_key = opening_key
        message = f"Account {account_id} has a movement on {first_movement_key}, before its opening day {opening_key}"
        MissingOpeningDataError.__init__(self, account_id, message)


class WatermarkInconsistencyError(MaterializationError):
    def __init__(self, account_id: int, watermark: int, reason: str):
        self.watermark = watermark
        message = f"Account {account_id} watermark {watermark} is inconsistent: {reason} (run a full rebuild)"
        MaterializationError.__init__(self, account_id, message)


class SinkWriteError(MaterializationError):
    def __init__(self, account_id: int, attempts: int, cause: BaseException):
        self.attempts = attempts
        message = f"Batch write for account {account_id} failed after {attempts} attempt(s): {type(cause).__name__}: {cause}"
        MaterializationError.__init__(self, account_id, message)
