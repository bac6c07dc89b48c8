from sqlalchemy import (
    Column, String, Date, DateTime, Numeric, ForeignKey, CheckConstraint, Index
)
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
import datetime
import enum
import uuid

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4()).upper()


class AllocatedFlag(str, enum.Enum):
    """Stored value of Position.allocated."""
    YES = "Yes"
    NO = "No"


class AllocationMode(str, enum.Enum):
    PERCENTAGE = "Percentage"
    DAYS = "Days"


class Project(Base):
    __tablename__ = "projects"
    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), index=True)
    allocation_mode = Column(String(100), default=AllocationMode.PERCENTAGE.value)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)

    positions = relationship("Position", back_populates="project")


class Resource(Base):
    __tablename__ = "resources"
    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), index=True)
    resource_type = Column(String(50))  # Employee, Contractor
    created_at = Column(DateTime, default=datetime.datetime.utcnow)


class Position(Base):
    __tablename__ = "positions"
    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False)
    task_id = Column(String(255), nullable=True)  # ERP job task reference
    position_name = Column(String(255))
    month_year = Column(Date, nullable=False)  # Always first of month
    allocation_mode = Column(String(100), nullable=True)
    loe = Column(Numeric(10, 2), nullable=True)
    allocated = Column(String(3), nullable=False, default=AllocatedFlag.NO.value)

    project = relationship("Project", back_populates="positions")

    __table_args__ = (
        CheckConstraint("allocated IN ('Yes', 'No')", name="ck_position_allocated"),
        Index("ix_positions_project", "project_id"),
        Index("ix_positions_month_year", "month_year"),
        Index("ix_positions_allocated", "allocated"),
        Index("ix_positions_month_year_allocated", "month_year", "allocated"),
    )


class Allocation(Base):
    __tablename__ = "allocations"
    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False)
    resource_id = Column(String(36), ForeignKey("resources.id"), nullable=False)
    # Not a foreign key: an allocation may outlive its position (orphaned reference)
    position_id = Column(String(36), nullable=True)
    month_year = Column(Date, nullable=False)
    allocation_mode = Column(String(100), nullable=True)
    loe = Column(Numeric(18, 2), nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)

    resource = relationship("Resource")

    __table_args__ = (
        Index("ix_allocations_position", "position_id"),
        Index("ix_allocations_resource", "resource_id"),
        Index("ix_allocations_project", "project_id"),
        Index("ix_allocations_month_year", "month_year"),
        Index("ix_allocations_resource_month_year", "resource_id", "month_year"),
    )
