class ActiveRecordError(Exception):
    pass


class InvalidModel(ActiveRecordError, TypeError):
    pass


class EntityWithoutIdentity(ActiveRecordError, TypeError):
    pass


class MultipleIdentities(InvalidModel):
    pass


class UnknownAttribute(ActiveRecordError, AttributeError):
    def __init__(self, model_name: str, field: str) -> None:
        super().__init__(f"{model_name} has no attribute {field!r}")
        self.model_name = model_name
        self.field = field


class InvalidKeyType(ActiveRecordError, TypeError):
    pass


class OptimisticLockConflict(ActiveRecordError, RuntimeError):
    """Versioned update matched no rows: the entity is stale and has to be reloaded."""

    def __init__(self, model_name: str, key: object, version: object) -> None:
        super().__init__(f"{model_name}({key!r}) was modified concurrently, expected version {version!r}")
        self.model_name = model_name
        self.key = key
        self.version = version


class UnsupportedOperation(ActiveRecordError, RuntimeError):
    pass


class NestedTransaction(UnsupportedOperation):
    pass


class UnknownRelation(ActiveRecordError, AttributeError):
    def __init__(self, model_name: str, relation: str) -> None:
        super().__init__(f"Relationship {relation!r} not found on {model_name}")
        self.model_name = model_name
        self.relation = relation


class UnknownScope(ActiveRecordError, AttributeError):
    def __init__(self, model_name: str, scope: str) -> None:
        super().__init__(f"Scope {scope!r} not found on {model_name}")
        self.model_name = model_name
        self.scope = scope


class RelationNotLoaded(ActiveRecordError, LookupError):
    pass


class NotFound(ActiveRecordError, LookupError):
    pass


class UnknownModel(ActiveRecordError, LookupError):
    pass


class UnboundRegistry(ActiveRecordError, RuntimeError):
    pass
