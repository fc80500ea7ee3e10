from sc_readers.validation.errors import ValidationError, ValidationIssue
from sc_readers.validation.options_validation import validate_options
