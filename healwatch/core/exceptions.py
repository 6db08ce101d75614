"""Custom exceptions for the monitoring and self-healing engine."""


class MonitoringError(Exception):
    """Base exception for monitoring errors."""

    def __init__(
        self, message: str, resource_id: str | None = None, cause: Exception | None = None
    ):
        super().__init__(message)
        self.resource_id = resource_id
        self.cause = cause

    def __str__(self) -> str:
        msg = super().__str__()
        if self.resource_id:
            msg = f"{msg} (Resource: {self.resource_id})"
        if self.cause:
            msg = f"{msg} (Caused by: {self.cause})"
        return msg


class ValidationError(MonitoringError):
    """Exception raised when metric or resource input is malformed."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        resource_id: str | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message, resource_id=resource_id, cause=cause)
        self.field = field


class ConfigurationError(MonitoringError):
    """Exception raised for configuration-related errors."""

    pass


class InsufficientDataError(MonitoringError):
    """Raised when the forecaster does not have enough history for a prediction."""

    def __init__(self, message: str, resource_id: str | None = None, available: int = 0, required: int = 0):
        super().__init__(message, resource_id=resource_id)
        self.available = available
        self.required = required


class NoApplicableRemediationError(MonitoringError):
    """Raised when no healing rule matches an issue type."""

    def __init__(self, message: str, issue_type: str, resource_id: str | None = None):
        super().__init__(message, resource_id=resource_id)
        self.issue_type = issue_type

    def __str__(self) -> str:
        return f"{super().__str__()} (Issue type: {self.issue_type})"


class ActionExecutionError(MonitoringError):
    """Raised when a single remediation action fails or times out."""

    def __init__(self, message: str, action_id: str, cause: Exception | None = None):
        super().__init__(message, cause=cause)
        self.action_id = action_id


class ChannelDeliveryError(MonitoringError):
    """Raised when a notification channel cannot deliver an alert."""

    def __init__(self, message: str, channel: str, cause: Exception | None = None):
        super().__init__(message, cause=cause)
        self.channel = channel

    def __str__(self) -> str:
        return f"{super().__str__()} (Channel: {self.channel})"


class AlertNotFoundError(MonitoringError):
    """Raised when an alert id is unknown."""

    def __init__(self, alert_id: int):
        super().__init__(f"Alert {alert_id} not found")
        self.alert_id = alert_id


class InvalidAlertTransition(MonitoringError):
    """Raised on a lifecycle transition the alert state machine does not allow."""

    def __init__(self, alert_id: int, current: str, target: str):
        super().__init__(f"Alert {alert_id} cannot move from {current} to {target}")
        self.alert_id = alert_id
        self.current = current
        self.target = target
