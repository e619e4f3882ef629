"""
Input validation utilities for the patient sync pipeline.

Validates identifiers and parameters that arrive from the command line or a
trigger before they reach the database or the clinical API.
"""

import re
from urllib.parse import urlparse

ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-\.]+$")
MAX_ID_LENGTH = 255
MAX_PAGE_SIZE = 1000


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


def validate_batch_id(batch_id: str, field_name: str = "batch_id") -> str:
    """
    Validate a batch ID.

    Batch IDs must be non-empty strings containing only alphanumeric
    characters, hyphens, underscores and dots.

    Args:
        batch_id: The batch ID to validate
        field_name: Name of the field (for error messages)

    Returns:
        The validated batch ID (stripped of whitespace)

    Raises:
        ValidationError: If validation fails

    Examples:
        >>> validate_batch_id("batch-2024-06-01")
        'batch-2024-06-01'
        >>> validate_batch_id("bad id!")  # doctest: +SKIP
        ValidationError: batch_id contains invalid characters
    """
    if not batch_id or not isinstance(batch_id, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    batch_id = batch_id.strip()

    if not batch_id:
        raise ValidationError(f"{field_name} cannot be empty or whitespace-only")

    if not ID_PATTERN.match(batch_id):
        raise ValidationError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric, hyphens, underscores, and dots are allowed."
        )

    if len(batch_id) > MAX_ID_LENGTH:
        raise ValidationError(f"{field_name} exceeds maximum length of {MAX_ID_LENGTH} characters")

    return batch_id


def validate_source_system(source_system: str, field_name: str = "source_system") -> str:
    """
    Validate a source system name.

    Same rules as batch IDs.

    Examples:
        >>> validate_source_system("hapi_fhir_r4")
        'hapi_fhir_r4'
    """
    return validate_batch_id(source_system, field_name)


def validate_page_size(page_size: int, field_name: str = "page_size") -> int:
    """
    Validate a requested page size.

    Args:
        page_size: Entries per page
        field_name: Name of the field (for error messages)

    Returns:
        The validated page size

    Raises:
        ValidationError: If not an integer in [1, 1000]
    """
    if isinstance(page_size, bool) or not isinstance(page_size, int):
        raise ValidationError(f"{field_name} must be an integer, got {type(page_size).__name__}")

    if page_size <= 0:
        raise ValidationError(f"{field_name} must be a positive integer, got {page_size}")

    if page_size > MAX_PAGE_SIZE:
        raise ValidationError(f"{field_name} exceeds maximum of {MAX_PAGE_SIZE}")

    return page_size


def validate_endpoint(endpoint: str, field_name: str = "endpoint") -> str:
    """
    Validate a clinical API base URL.

    Args:
        endpoint: http(s) URL with a host
        field_name: Name of the field (for error messages)

    Returns:
        The endpoint without surrounding whitespace or a trailing slash

    Raises:
        ValidationError: If the URL is not http(s) or has no host

    Examples:
        >>> validate_endpoint("https://hapi.fhir.org/baseR4/")
        'https://hapi.fhir.org/baseR4'
    """
    if not endpoint or not isinstance(endpoint, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    endpoint = endpoint.strip()
    parsed = urlparse(endpoint)

    if parsed.scheme not in ("http", "https"):
        raise ValidationError(f"{field_name} must use http or https, got '{parsed.scheme}'")

    if not parsed.netloc:
        raise ValidationError(f"{field_name} must include a host")

    if "\x00" in endpoint:
        raise ValidationError(f"{field_name} contains null bytes")

    return endpoint.rstrip("/")


def validate_limit(limit: int, field_name: str = "limit", max_limit: int = 10000) -> int:
    """
    Validate a limit parameter for queries.

    Raises:
        ValidationError: If not a positive integer up to max_limit
    """
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError(f"{field_name} must be an integer, got {type(limit).__name__}")

    if limit <= 0:
        raise ValidationError(f"{field_name} must be a positive integer, got {limit}")

    if limit > max_limit:
        raise ValidationError(f"{field_name} exceeds maximum of {max_limit}")

    return limit
