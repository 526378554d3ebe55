"""Error taxonomy for conversion jobs.

Every error carries the HTTP status the web layer should answer with. The
message is safe to return to clients: it holds diagnostic detail but never a
stack trace.
"""


class ConversionError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# --- Validation (400, never retried) ---

class ValidationError(ConversionError):
    status_code = 400


class MissingField(ValidationError):
    def __init__(self, field: str) -> None:
        super().__init__(f"{field} is required")
        self.field = field


class UnsupportedKind(ValidationError):
    def __init__(self, kind: str, supported: list[str]) -> None:
        super().__init__(f"unsupported outputKind {kind!r}; expected one of: {', '.join(supported)}")
        self.kind = kind


class InvalidSourceReference(ValidationError):
    def __init__(self, reference: str) -> None:
        super().__init__(f"sourceReference is not a valid http(s) URL: {reference!r}")
        self.reference = reference


# --- Provisioning (500) ---

class ProvisioningError(ConversionError):
    pass


class TooManyRedirects(ProvisioningError):
    def __init__(self, max_redirects: int) -> None:
        super().__init__(f"converter download exceeded {max_redirects} redirects")
        self.max_redirects = max_redirects


class DownloadFailed(ProvisioningError):
    def __init__(self, status_code: int | None, detail: str = "") -> None:
        if status_code is None:
            msg = f"converter download failed: {detail or 'network error'}"
        else:
            msg = f"converter download failed with status {status_code}"
        super().__init__(msg)
        self.http_status = status_code


class InvalidArtifact(ProvisioningError):
    def __init__(self, size_bytes: int, minimum: int) -> None:
        super().__init__(
            f"downloaded converter is too small ({size_bytes} bytes, expected at least {minimum}); "
            "the server probably returned an error page"
        )
        self.size_bytes = size_bytes
        self.minimum = minimum


# --- Execution (500) ---

class ExecutionError(ConversionError):
    pass


class SpawnFailed(ExecutionError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"failed to launch converter: {detail}")


class ConversionFailed(ExecutionError):
    def __init__(self, exit_code: int, diagnostic_tail: list[str]) -> None:
        tail = "\n".join(diagnostic_tail[-6:]).strip()
        msg = f"converter exited with code {exit_code}"
        if tail:
            msg = f"{msg}: {tail}"
        super().__init__(msg)
        self.exit_code = exit_code
        self.diagnostic_tail = list(diagnostic_tail)


class ArtifactMissing(ExecutionError):
    def __init__(self, path: str) -> None:
        # Path stays out of the client-facing message
        super().__init__("converter reported success but produced no output")
        self.path = path


class JobCancelled(ExecutionError):
    # Client closed request; nobody is left to receive this status
    status_code = 499

    def __init__(self) -> None:
        super().__init__("job cancelled by caller")


# --- Delivery (logged only) ---

class DeliveryError(ConversionError):
    pass
