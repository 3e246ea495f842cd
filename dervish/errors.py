"""Error taxonomy.

Declaration-time errors are raised before anything is built. Store
contention (AlreadyBuilding) makes callers wait rather than fail. Fetch
and build errors carry the id of the failing store entry so the first
root cause can be reported with its derivation and phase.
"""


class DervishError(Exception):
    pass


# --- declaration time ---

class DeclarationError(DervishError):
    pass


class CycleDetected(DeclarationError):
    def __init__(self, cycle: list[str], message: str | None = None):
        self.cycle = list(cycle)
        super().__init__(message or "reference cycle: " + " -> ".join(self.cycle))


class ForwardReference(CycleDetected):
    """A derivation was added before one of its inputs."""

    def __init__(self, owner: str, input_name: str, reference: str):
        self.owner = owner
        self.input_name = input_name
        self.reference = reference
        super().__init__(
            [owner, reference],
            f"{owner}: input {input_name!r} ({reference}) is not in the graph yet",
        )


class UnresolvedInput(DeclarationError):
    def __init__(self, owner: str, input_name: str, reference: str = ""):
        self.owner = owner
        self.input_name = input_name
        self.reference = reference
        detail = f" ({reference})" if reference else ""
        super().__init__(f"{owner}: input {input_name!r}{detail} does not resolve")


class TemplateError(DeclarationError):
    pass


class IntegrityError(DervishError):
    """Two different declarations claim the same id."""


# --- store ---

class StoreError(DervishError):
    pass


class AlreadyBuilding(StoreError):
    def __init__(self, store_id: str):
        self.store_id = store_id
        super().__init__(f"a build of {store_id} is already in progress")


class AlreadyValid(StoreError):
    def __init__(self, entry):
        self.entry = entry
        super().__init__(f"{entry.id} is already valid")


# --- fetch ---

class FetchError(DervishError):
    """A fixed-output fetch failed.

    ``drv_id`` is the fetched entry; ``needed_by`` and ``phase`` name the
    derivation whose build asked for it, when there is one.
    """

    drv_id: str | None = None
    needed_by: str | None = None
    phase = None

    def __str__(self):
        message = super().__str__()
        if self.drv_id:
            message += f" [entry {self.drv_id}]"
        if self.needed_by:
            phase_name = getattr(self.phase, "value", self.phase)
            message += f" [needed by {self.needed_by} in phase {phase_name}]"
        return message


class HashMismatch(FetchError):
    def __init__(self, expected: str, actual: str, url: str = "", drv_id: str | None = None):
        self.expected = expected
        self.actual = actual
        self.url = url
        self.drv_id = drv_id
        where = f" for {url}" if url else ""
        super().__init__(f"hash mismatch{where}: specified {expected}, got {actual}")


class FetchFailed(FetchError):
    def __init__(self, url: str, cause: object, drv_id: str | None = None):
        self.url = url
        self.cause = cause
        self.drv_id = drv_id
        super().__init__(f"fetching {url} failed: {cause}")


# --- build ---

class BuildFailed(DervishError):
    def __init__(self, drv_id: str, phase, cause: str):
        self.drv_id = drv_id
        self.phase = phase
        self.cause = cause
        phase_name = getattr(phase, "value", phase)
        super().__init__(f"build of {drv_id} failed in phase {phase_name}: {cause}")


class DependencyFailed(DervishError):
    def __init__(self, drv_id: str, failed_id: str):
        self.drv_id = drv_id
        self.failed_id = failed_id
        super().__init__(f"{drv_id} not built: dependency {failed_id} failed")


class PatchError(DervishError):
    pass


class Cancelled(DervishError):
    def __init__(self, drv_id: str):
        self.drv_id = drv_id
        super().__init__(f"build of {drv_id} was cancelled")
