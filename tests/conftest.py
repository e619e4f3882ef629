"""
Pytest configuration and fixtures for patient-sync tests

This module provides shared fixtures for unit, integration, and E2E tests.
"""
import copy
from typing import Any, Callable, Generator

import pytest
from testcontainers.postgres import PostgresContainer

from patient_sync.core.models import SourceConfig
from patient_sync.warehouse.connection import DatabaseConnectionPool
from patient_sync.warehouse.schema_mgmt import SchemaManager

BASE_URL = "https://fhir.test.example/r4"


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that run a full batch"
    )


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container for integration tests

    Yields:
        PostgresContainer instance
    """
    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="test_pipeline",
        password="test_password",
        dbname="test_patient_sync",
    ) as postgres:
        yield postgres


@pytest.fixture(scope="session")
def db_pool(postgres_container) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Open a pool against the container and create the schema once

    Yields:
        Open DatabaseConnectionPool
    """
    pool = DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_patient_sync",
        user="test_pipeline",
        password="test_password",
        min_size=1,
        max_size=12,
    )
    pool.open(max_retries=5)
    SchemaManager(pool).create_tables()

    yield pool

    pool.close()


@pytest.fixture(scope="function")
def clean_db(db_pool) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Provide a pool over empty tables

    Yields:
        DatabaseConnectionPool with all pipeline tables truncated
    """
    SchemaManager(db_pool).truncate_tables()
    yield db_pool


# =======================
# DOCUMENT FIXTURES
# =======================

FULL_PATIENT: dict[str, Any] = {
    "resourceType": "Patient",
    "id": "pat-1001",
    "identifier": [
        {"system": "urn:oid:1.2.36.146.595.217.0.1", "value": "MRN-1001"},
        {"system": "http://hl7.org/fhir/sid/us-ssn", "value": "999-00-1001"},
    ],
    "name": [{"use": "official", "family": "Chalmers", "given": ["Peter", "James"]}],
    "gender": "male",
    "birthDate": "1974-12-25",
    "address": [
        {"line": ["534 Erewhon St"], "city": "PleasantVille", "state": "Vic", "postalCode": "3999"}
    ],
    "telecom": [
        {"system": "phone", "value": "(03) 5555 6473", "use": "work"},
        {"system": "email", "value": "p.chalmers@example.org"},
    ],
}


@pytest.fixture
def full_patient() -> dict[str, Any]:
    """A patient document populated in every scored category"""
    return copy.deepcopy(FULL_PATIENT)


@pytest.fixture
def make_patient() -> Callable[..., dict[str, Any]]:
    """
    Build a complete patient document with overrides

    Passing a field with value None removes it.
    """
    def _make(patient_id: str | None = "pat-1001", **overrides: Any) -> dict[str, Any]:
        document = copy.deepcopy(FULL_PATIENT)
        if patient_id is None:
            document.pop("id")
        else:
            document["id"] = patient_id
            document["identifier"][0]["value"] = f"MRN-{patient_id}"
        for key, value in overrides.items():
            if value is None:
                document.pop(key, None)
            else:
                document[key] = value
        return document

    return _make


@pytest.fixture
def make_bundle() -> Callable[..., dict[str, Any]]:
    """Build a FHIR searchset Bundle page"""
    def _make(resources: list[Any], next_url: str | None = None, self_url: str | None = None) -> dict[str, Any]:
        links = [{"relation": "self", "url": self_url or f"{BASE_URL}/Patient"}]
        if next_url:
            links.append({"relation": "next", "url": next_url})
        return {
            "resourceType": "Bundle",
            "type": "searchset",
            "link": links,
            "entry": [{"fullUrl": f"{BASE_URL}/Patient/{i}", "resource": r} for i, r in enumerate(resources)],
        }

    return _make


@pytest.fixture
def source_config() -> SourceConfig:
    """A source with no request spacing and fast backoff"""
    return SourceConfig(
        source_system="test_source",
        base_endpoint=BASE_URL,
        page_size=2,
        min_request_interval=0.0,
        max_retries=2,
        backoff_base=0.01,
        backoff_max=0.05,
        max_workers=2,
    )
