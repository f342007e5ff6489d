from typing import Optional


class GatewayError(Exception):
    """Base error of the subscription gateway.

    ``status_code`` and ``user_message`` are what the VPN client sees when the
    error ends a request.
    """

    status_code: int = 500
    user_message: str = "Internal Server Error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)


class TokenUnresolved(GatewayError):
    """Advisory only: the request is proxied anonymously, never answered with this error."""

    user_message = "Subscription token could not be resolved"


class UpstreamUnavailable(GatewayError):
    status_code = 502
    user_message = "Bad Gateway"


class DeviceRevoked(GatewayError):
    status_code = 403
    user_message = "Device Revoked"


class DeviceLimitExceeded(GatewayError):
    status_code = 403

    def __init__(self, limit: int):
        self.limit = limit
        self.user_message = f"Device Limit Exceeded (Max {limit})"
        super().__init__(self.user_message)


class RegistryUnavailable(GatewayError):
    user_message = "Device registry unavailable"


class GeoLookupFailure(GatewayError):
    user_message = "Geo lookup failed"


class RewriteFailure(GatewayError):
    user_message = "Subscription rewrite failed"


class NotificationFailure(GatewayError):
    user_message = "New device notification failed"
