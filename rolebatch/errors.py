class RoleBatchError(Exception):
    pass


class InvalidRunOptionsError(RoleBatchError, ValueError):
    pass


class RunNotFoundError(RoleBatchError, LookupError):
    def __init__(self, run_id: int) -> None:
        super().__init__(f"run {run_id} not found")
        self.run_id = run_id


class InvalidRunStateError(RoleBatchError):
    def __init__(self, run_id: int, current: str, target: str) -> None:
        super().__init__(f"run {run_id} cannot move from '{current}' to '{target}'")
        self.run_id = run_id
        self.current = current
        self.target = target


class TransientError(RoleBatchError):
    """Collaborator fault that may succeed when retried (timeout, lost connection)."""


class StoreUnavailableError(RoleBatchError):
    """Record store could not be reached before any batch started."""
