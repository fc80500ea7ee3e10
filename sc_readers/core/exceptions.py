

class ScReadersError(Exception):
    """Base exception for all sc_readers errors"""
    pass

class ConfigError(ScReadersError):
    """Invalid or inconsistent dataset options or config directory"""
    pass

class FormatMismatchError(ScReadersError):
    """Wrong number or type of serialized files for the chosen format"""
    pass

class SchemaUnknownError(ScReadersError):
    """
    A '$schema' or OBJECT 'type' that no decoder handles,
    or an R object of a class that cannot be interpreted
    """
    pass

class RequiredFieldMissingError(ScReadersError):
    """A mandatory group, dataset or metadata field is absent"""
    pass

class DimensionMismatchError(ScReadersError):
    """Row/column counts derived from two sources disagree"""
    pass

class SelectorInvalidError(ScReadersError):
    """Assay name not found or assay index out of range"""
    pass

class DelayedUnsupportedError(ScReadersError):
    """Delayed-array tree contains an operation or seed we cannot interpret"""

    def __init__(self, kind: str, detail: str = "") -> None:
        self.kind = kind
        message = f"unsupported delayed array component '{kind}'"
        if detail:
            message += f" ({detail})"
        super().__init__(message)

class ResourceFailureError(ScReadersError):
    """The matrix engine, HDF5 layer or archive layer failed underneath us"""
    pass

class RedirectionError(ScReadersError):
    """Redirection chain is cyclic or deeper than the allowed maximum"""
    pass
