class QuestlineError(Exception):
    pass


class RemoteStoreError(QuestlineError):
    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class RemoteValidationError(RemoteStoreError):
    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class CircuitOpenError(RemoteStoreError):
    pass


class DependencyCycleError(QuestlineError):
    def __init__(self, entity_id: str, cycle_path: tuple[str, ...] = ()) -> None:
        path = " -> ".join(cycle_path) if cycle_path else entity_id
        super().__init__(f"Dependency cycle while resolving {entity_id!r}: {path}")
        self.entity_id = entity_id
        self.cycle_path = cycle_path


class UnknownEntityError(QuestlineError, KeyError):
    def __init__(self, entity_id: str) -> None:
        super().__init__(entity_id)
        self.entity_id = entity_id

    def __str__(self) -> str:
        return f"Unknown entity {self.entity_id!r}"
