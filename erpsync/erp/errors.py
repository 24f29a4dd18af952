from __future__ import annotations


class ErpClientError(RuntimeError):
    """Batch-level failure reported by the ERP client for a whole page."""

    kind = "erp_error"


class AuthExpiredError(ErpClientError):
    kind = "auth_expired"


class TransportError(ErpClientError):
    kind = "transport"


class MalformedResponseError(ErpClientError):
    kind = "malformed_response"


class RemoteRejectedError(ErpClientError):
    kind = "remote_rejected"

    def __init__(self, code: str | int, message: str):
        super().__init__(f"ERP rejected the request ({code}): {message}")
        self.code = code
        self.message = message
