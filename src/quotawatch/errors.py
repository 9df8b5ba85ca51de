class ProbeError(Exception):
    """
    ProbeError is the base for every failure a provider probe
    reports to its caller. Its message is user-facing and ends up
    as the probe result's error string.
    """


class NotAuthenticatedError(ProbeError):
    """
    no usable credential was found, the user has to run the
    provider's own login flow.
    """


class SessionExpiredError(ProbeError):
    """
    the refresh token was rejected (invalid_grant) or the usage
    endpoint kept answering 401 after a refresh. Same remedy as
    NotAuthenticatedError.
    """


class TransientError(ProbeError):
    """
    network errors, unexpected HTTP statuses and malformed responses.
    Safe to retry on the next poll.
    """


class RefreshFailedError(TransientError):
    """
    a token refresh failed for a reason other than invalid_grant.
    """

    def __init__(self, status: "int | None", code: "str" = "") -> "None":
        self.status = status
        self.code = code
        if status is None:
            message = f"Token refresh failed: {code or 'network error'}"
        else:
            message = f"Token refresh failed ({status}): {code}".rstrip(": ")
        super().__init__(message)
