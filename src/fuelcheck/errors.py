from enum import Enum


class CredentialErrorKind(str, Enum):
    MISSING_CREDENTIAL = "missing_credential"
    UNSUPPORTED_SOURCE = "unsupported_source"
    INVALID_ACCOUNT_INDEX = "invalid_account_index"


class FetchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    TRANSPORT_FAILURE = "transport_failure"
    AUTHENTICATION_REJECTED = "authentication_rejected"
    REMOTE_UNAVAILABLE = "remote_unavailable"
    UNSUPPORTED_OPERATION = "unsupported_operation"


class NormalizationErrorKind(str, Enum):
    UNRECOGNIZED_RESPONSE_SHAPE = "unrecognized_response_shape"
    UNKNOWN_MODEL_RATE = "unknown_model_rate"


class ReportErrorKind(str, Enum):
    INVALID_RANGE = "invalid_range"
    INVALID_TIMEZONE = "invalid_timezone"
    INVALID_DATE = "invalid_date"


class FuelcheckError(Exception):
    """
    FuelcheckError is the base for every error fuelcheck reports
    to the user. Each subclass carries a stable kind tag that is
    rendered in JSON output next to the human-readable message.
    """

    kind: "str" = "runtime"

    def __init__(self, message: "str") -> "None":
        super().__init__(message)
        self.message = message

    def to_payload(self) -> "dict[str, str]":
        return {"kind": str(self.kind), "message": self.message}


class CredentialError(FuelcheckError):
    def __init__(self, kind: "CredentialErrorKind", message: "str") -> "None":
        super().__init__(message)
        self.kind = kind.value


class FetchError(FuelcheckError):
    def __init__(self, kind: "FetchErrorKind", message: "str") -> "None":
        super().__init__(message)
        self.kind = kind.value


class NormalizationError(FuelcheckError):
    def __init__(self, kind: "NormalizationErrorKind", message: "str") -> "None":
        super().__init__(message)
        self.kind = kind.value


class ReportError(FuelcheckError):
    def __init__(self, kind: "ReportErrorKind", message: "str") -> "None":
        super().__init__(message)
        self.kind = kind.value


class ConfigError(FuelcheckError):
    """
    raised for a malformed configuration document; fatal to the
    whole invocation.
    """

    kind = "invalid_config"
