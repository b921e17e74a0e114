class ForestConfigError(ValueError):
    """Invalid forest parameters or training data detected before any tree is built."""


class DimensionMismatchError(ValueError):
    """Input width or output buffer shape does not match the trained model."""


class DatasetError(ValueError):
    """Malformed feature/label matrices or tabular input."""


class ModelFormatError(ValueError):
    """Persisted tree or forest is corrupt, of the wrong kind, or of an unknown version."""
