"""
Pytest configuration and fixtures for the reconciliation test suite

Markers:
    - unit: Fast unit tests
    - property: Property-based tests (Hypothesis)
    - integration: Tests that go through the HTTP layer
"""

import pytest
import sys
import os
from datetime import date
from decimal import Decimal

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models


JAN = date(2025, 1, 1)
FEB = date(2025, 2, 1)
MAR = date(2025, 3, 1)


# ═══════════════════════════════════════════════════════════════════════════════
# PYTEST CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "property: Property-based tests (Hypothesis)")
    config.addinivalue_line("markers", "integration: Tests that go through the HTTP layer")


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════

def make_engine():
    """In-memory SQLite engine with every table and index created."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    models.Base.metadata.create_all(bind=engine)

    from migrations.add_allocation_indexes import add_allocation_indexes
    add_allocation_indexes(engine)
    return engine


@pytest.fixture
def test_engine():
    """Create a test database engine."""
    engine = make_engine()
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine):
    """Create a fresh database session for each test"""
    Session = sessionmaker(bind=test_engine)
    session = Session()

    yield session

    session.close()


@pytest.fixture
def project_x(db_session):
    project = models.Project(id="PRJ-X", name="Project X", allocation_mode="Percentage")
    db_session.add(project)
    db_session.commit()
    return project


@pytest.fixture
def project_y(db_session):
    project = models.Project(id="PRJ-Y", name="Project Y", allocation_mode="Days")
    db_session.add(project)
    db_session.commit()
    return project


@pytest.fixture
def sample_resource(db_session):
    resource = models.Resource(id="RES-1", name="Jane Contractor", resource_type="Contractor")
    db_session.add(resource)
    db_session.commit()
    return resource


@pytest.fixture
def make_position(db_session, project_x):
    """Factory for positions; defaults to Project X, January, not allocated."""
    def _make(position_id, project_id=None, month=JAN, allocated="No", name=None):
        position = models.Position(
            id=position_id,
            project_id=project_id or project_x.id,
            task_id="1000",
            position_name=name or f"Position {position_id}",
            month_year=month,
            allocation_mode="Percentage",
            loe=Decimal("50.00"),
            allocated=allocated,
        )
        db_session.add(position)
        db_session.commit()
        return position
    return _make


@pytest.fixture
def make_allocation(db_session, project_x, sample_resource):
    """Factory for allocations; defaults to Project X, January."""
    def _make(allocation_id, position_id, project_id=None, month=JAN):
        allocation = models.Allocation(
            id=allocation_id,
            project_id=project_id or project_x.id,
            resource_id=sample_resource.id,
            position_id=position_id,
            month_year=month,
            allocation_mode="Percentage",
            loe=Decimal("50.00"),
        )
        db_session.add(allocation)
        db_session.commit()
        return allocation
    return _make


def flag_of(db_session, position_id):
    return db_session.get(models.Position, position_id).allocated


def allocation_ids(db_session):
    return sorted(a.id for a in db_session.query(models.Allocation).all())
