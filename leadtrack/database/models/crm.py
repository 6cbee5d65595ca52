from sqlalchemy import Column, String, ForeignKey, JSON, DateTime, Text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ..base import Base
import uuid


def _uuid():
    return str(uuid.uuid4())


def _now():
    return datetime.now(timezone.utc)


class Lead(Base):
    __tablename__ = "leads"

    id = Column(String, primary_key=True, default=_uuid)

    name = Column(String, nullable=False)
    link = Column(String)
    status = Column(String, nullable=False)  # hot, warm, cold, progressive, sold, closed
    todo = Column(String, nullable=False)  # new, followup, callback, sale
    every = Column(String)  # recurrence in days ("5".."12"), NULL = manual
    follow_up_date = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD

    assigned_agent_id = Column(String, ForeignKey("profiles.id", ondelete="SET NULL"), index=True)
    assigned_agent_name = Column(String)

    close_reason = Column(Text)
    cold_status = Column(String)  # Unreached, Unresponsive
    cold_start_date = Column(String(10))
    cold_check_history = Column(JSON, default=list)

    deletion_request = Column("deletionRequest", JSON)

    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, nullable=False)

    notes = relationship(
        "Note",
        back_populates="lead",
        order_by="Note.created_at",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Note(Base):
    __tablename__ = "notes"

    id = Column(String, primary_key=True, default=_uuid)
    lead_id = Column(String, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)

    text = Column(Text, nullable=False)
    author_id = Column(String, ForeignKey("profiles.id", ondelete="SET NULL"))
    author_name = Column(String)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)

    lead = relationship("Lead", back_populates="notes")


class ActivityLog(Base):
    """Append-only trail of agent actions; never updated after insert."""
    __tablename__ = "activity_logs"

    id = Column(String, primary_key=True, default=_uuid)
    lead_id = Column(String, ForeignKey("leads.id", ondelete="CASCADE"), index=True)
    agent_id = Column(String, ForeignKey("profiles.id", ondelete="SET NULL"), index=True)

    action = Column(String, nullable=False)  # note_added, date_changed, status_changed, created, rule_violation
    details = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False, index=True)
