# kartogrid/exceptions.py


class GridError(Exception):
    """Base class for kartogrid errors."""


class SchemaValidationError(GridError):
    """A record does not satisfy an entity's constraints."""


class MissingFieldError(SchemaValidationError):
    def __init__(self, field: str, entity: str = "GridCell"):
        self.field = field
        self.entity = entity
        super().__init__(f"{entity}: required field '{field}' is missing")


class UniqueConstraintViolationError(SchemaValidationError):
    def __init__(self, field: str, value, entity: str = "GridCell"):
        self.field = field
        self.value = value
        self.entity = entity
        super().__init__(
            f"{entity}: value {value!r} for unique field '{field}' already exists"
        )


class ProjectionError(GridError, ValueError):
    """Unknown or unsupported projection."""


class ConfigError(GridError):
    """Config file is missing or incomplete."""
