"""Exceptions raised by the migration engine."""


class MigrationError(Exception):
    """Base class for engine errors."""


class InvalidTransition(MigrationError):
    """Requested run action is not legal from the current run status."""

    def __init__(self, current: str, action: str):
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} migration while {current}")


class RunConflict(MigrationError):
    """A version-checked write to the run record lost to a concurrent writer."""

    def __init__(self, expected_version: int):
        self.expected_version = expected_version
        super().__init__(f"Run record changed concurrently (expected version {expected_version})")


class StoreUnavailable(MigrationError):
    """The item store or run record could not be reached."""


class ItemFailure(MigrationError):
    """A single item failed in the pipeline. Never escapes the item boundary."""

    transient = False

    def __init__(self, reason: str, transient: bool | None = None):
        if transient is not None:
            self.transient = transient
        self.reason = reason
        super().__init__(reason)

    def classified(self) -> str:
        kind = "transient" if self.transient else "permanent"
        return f"{kind}: {self.reason}"


class SourceFetchError(ItemFailure):
    transient = True


class TransformFailure(ItemFailure):
    transient = False


class TargetStoreError(ItemFailure):
    transient = True
