from __future__ import annotations

from typing import Any, Mapping

from sc_readers.validation.errors import ValidationIssue, ValidationError

# Option kinds understood by validate_options:
#   label      - str or None
#   selector   - column/experiment name, position, or None
#   assay      - assay name or position
#   assay_map  - assay selector, or modality -> assay selector
#   flag_map   - bool, or modality -> bool
#   names      - None or list of str
#   text       - str


def _is_index(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_assay(value: Any) -> bool:
    return isinstance(value, str) or _is_index(value)


def _check(kind: str, value: Any) -> bool:
    if kind == "label":
        return value is None or isinstance(value, str)
    if kind == "selector":
        return value is None or _is_assay(value)
    if kind == "assay":
        return _is_assay(value)
    if kind == "assay_map":
        if isinstance(value, dict):
            return all(isinstance(k, str) and _is_assay(v) for k, v in value.items())
        return _is_assay(value)
    if kind == "flag_map":
        if isinstance(value, dict):
            return all(isinstance(k, str) and isinstance(v, bool) for k, v in value.items())
        return isinstance(value, bool)
    if kind == "names":
        return value is None or (isinstance(value, list) and all(isinstance(v, str) for v in value))
    if kind == "text":
        return isinstance(value, str)
    raise ValueError(f"unknown option kind '{kind}'")


def validate_options(format_name: str, kinds: Mapping[str, str], partial: Any) -> None:
    """
    Check a partial options dict against the option kinds of a dataset class.

    Every problem is collected before raising, so callers see them all at once.

    :raises ValidationError: on unknown keys or wrongly-typed values
    """
    if not isinstance(partial, Mapping):
        raise ValidationError([ValidationIssue("OPTIONS_TYPE", f"options for '{format_name}' must be a mapping.")])

    issues: list[ValidationIssue] = []
    for key, value in partial.items():
        if key not in kinds:
            issues.append(ValidationIssue("OPTION_UNKNOWN", f"'{key}' is not an option of '{format_name}'."))
            continue
        if not _check(kinds[key], value):
            issues.append(
                ValidationIssue("OPTION_TYPE", f"'{key}' has an invalid value {value!r} (expected {kinds[key]}).")
            )

    if issues:
        raise ValidationError(issues)
