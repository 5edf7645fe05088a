"""
Job Run Model - last outcome per periodic job, read by the health endpoint.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean

from app.db.database import Base


class JobRunRow(Base):
    __tablename__ = "job_runs"

    job_name = Column(String(100), primary_key=True)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    last_finished_at = Column(DateTime(timezone=True), nullable=True)
    last_success = Column(Boolean, nullable=True)
    last_stats = Column(JSON, nullable=False, default=dict)
    last_error = Column(String(1000), nullable=True)
    total_runs = Column(Integer, nullable=False, default=0)
    total_failures = Column(Integer, nullable=False, default=0)
