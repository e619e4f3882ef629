"""
Extraction of patient documents from a FHIR searchset Bundle.

A page is a Bundle: `entry[].resource` holds the documents and the `link`
entry whose relation is `next` holds the continuation URL. A missing next
link is the only end-of-pagination signal.
"""

from typing import Any

from patient_sync.core.exceptions import ParseError, ScoringError

PAGE_CONTAINER_TYPE = "Bundle"


def validate_container(raw_page: Any, url: str | None = None) -> dict[str, Any]:
    """
    Check that a decoded page is a Bundle.

    Args:
        raw_page: Decoded JSON body
        url: Page URL, for error context

    Returns:
        The page, unchanged

    Raises:
        ParseError: If the page is not a mapping with resourceType Bundle,
            or its entry/link fields are not lists
    """
    if not isinstance(raw_page, dict):
        raise ParseError(
            f"Page body must be a JSON object, got {type(raw_page).__name__}", url=url
        )

    resource_type = raw_page.get("resourceType")
    if resource_type != PAGE_CONTAINER_TYPE:
        raise ParseError(
            f"Expected resourceType '{PAGE_CONTAINER_TYPE}', got '{resource_type}'", url=url
        )

    for field_name in ("entry", "link"):
        value = raw_page.get(field_name)
        if value is not None and not isinstance(value, list):
            raise ParseError(f"Bundle '{field_name}' must be a list", url=url)

    return raw_page


def next_link(raw_page: dict[str, Any]) -> str | None:
    """URL of the `next` link, or None when pagination is exhausted."""
    for link in raw_page.get("link") or []:
        if isinstance(link, dict) and link.get("relation") == "next" and link.get("url"):
            return link["url"]
    return None


def extract(
    raw_page: Any,
    resource_type: str = "Patient",
    url: str | None = None,
) -> tuple[list[dict[str, Any]], str | None]:
    """
    Pull documents and the continuation cursor out of a page.

    Entries without a resource mapping, and resources of another type
    (OperationOutcome, included resources), are skipped.

    Args:
        raw_page: Decoded JSON body
        resource_type: Resource type to keep
        url: Page URL, for error context

    Returns:
        Tuple of (documents, next cursor or None)

    Raises:
        ParseError: If the page is not a valid Bundle
    """
    page = validate_container(raw_page, url=url)

    documents = []
    for entry in page.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        resource = entry.get("resource")
        if not isinstance(resource, dict):
            continue
        if resource.get("resourceType", resource_type) != resource_type:
            continue
        documents.append(resource)

    return documents, next_link(page)


def source_record_id(document: dict[str, Any]) -> str:
    """
    Natural-key id of a document in its source system.

    The document's `id`; failing that, the value of its first identifier
    that has one (typically a medical record number).

    Raises:
        ScoringError: If the document has neither
    """
    if not isinstance(document, dict):
        raise ScoringError(f"Document must be a mapping, got {type(document).__name__}")

    record_id = document.get("id")
    if isinstance(record_id, (str, int)) and not isinstance(record_id, bool) and str(record_id).strip():
        return str(record_id).strip()

    identifiers = document.get("identifier")
    if isinstance(identifiers, list):
        for identifier in identifiers:
            if isinstance(identifier, dict):
                value = identifier.get("value")
                if isinstance(value, (str, int)) and str(value).strip():
                    return str(value).strip()

    raise ScoringError("Document has no id and no identifier value", field_name="id")
