"""
SourceConfig model describing one clinical API source to extract from.
"""

from urllib.parse import urlencode

from pydantic import BaseModel, Field, field_validator


class SourceConfig(BaseModel):
    """
    Connection and pacing settings for one source system.

    Attributes:
        source_system: Name of the source (second half of the natural key)
        base_endpoint: Base URL of the clinical API (e.g. a FHIR R4 base)
        resource_type: Resource to page through
        page_size: Entries requested per page
        min_request_interval: Minimum seconds between two requests, retries included
        max_retries: Retries for a transient fetch failure before the batch fails
        backoff_base: First retry delay in seconds, doubled per attempt
        backoff_max: Upper bound on a single retry delay
        request_timeout: Per-request timeout in seconds
        max_workers: Worker threads scoring and storing documents within a page
        headers: Extra request headers supplied by a credentials provider
    """

    source_system: str = Field(..., min_length=1, max_length=255)
    base_endpoint: str = Field(..., min_length=1)
    resource_type: str = "Patient"
    page_size: int = Field(50, ge=1, le=1000)
    min_request_interval: float = Field(3.0, ge=0.0)
    max_retries: int = Field(3, ge=0, le=10)
    backoff_base: float = Field(1.0, ge=0.0)
    backoff_max: float = Field(30.0, ge=0.0)
    request_timeout: float = Field(30.0, gt=0.0)
    max_workers: int = Field(4, ge=1, le=64)
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("base_endpoint")
    @classmethod
    def check_endpoint(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_endpoint must be an http(s) URL")
        return v.rstrip("/")

    def first_page_url(self) -> str:
        """URL of the first page, the initial cursor of every new batch."""
        query = urlencode({"_count": self.page_size})
        return f"{self.base_endpoint}/{self.resource_type}?{query}"

    class Config:
        json_schema_extra = {
            "example": {
                "source_system": "hapi_fhir_r4",
                "base_endpoint": "https://hapi.fhir.org/baseR4",
                "page_size": 50,
                "min_request_interval": 3.0,
                "max_retries": 3,
            }
        }
