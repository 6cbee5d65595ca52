from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Text, Numeric, UniqueConstraint
from datetime import datetime, timezone
from ..base import Base
import uuid


def _uuid():
    return str(uuid.uuid4())


def _now():
    return datetime.now(timezone.utc)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True)  # auth user id
    email = Column(String, unique=True, index=True)
    name = Column(String)
    role = Column(String, default="agent")  # agent, admin
    points = Column(Integer, default=0)
    theme_preference = Column(String, default="dark")
    created_at = Column(DateTime(timezone=True), default=_now)


class PointsHistory(Base):
    __tablename__ = "points_history"

    id = Column(String, primary_key=True, default=_uuid)
    agent_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_name = Column(String)
    amount = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    lead_id = Column(String, ForeignKey("leads.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)


class PayoutRequest(Base):
    __tablename__ = "payout_requests"

    id = Column(String, primary_key=True, default=_uuid)
    agent_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_name = Column(String, nullable=False)
    points_requested = Column(Integer, nullable=False)
    dollar_value = Column(Numeric(10, 2), nullable=False)
    status = Column(String, default="pending", nullable=False)  # pending, approved, denied
    admin_note = Column(Text)
    requested_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    processed_at = Column(DateTime(timezone=True))
    processed_by = Column(String, ForeignKey("profiles.id", ondelete="SET NULL"))


class AgentTarget(Base):
    """Monthly targets per agent; one row per (agent_id, month)."""
    __tablename__ = "agent_targets"
    __table_args__ = (UniqueConstraint("agent_id", "month", name="uq_agent_targets_agent_month"),)

    id = Column(String, primary_key=True, default=_uuid)
    agent_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    agent_name = Column(String, nullable=False)
    month = Column(String(10), nullable=False)  # first day of month, YYYY-MM-DD

    gp_target = Column(Numeric, default=0)
    sales_target = Column(Integer, default=0)
    tp_target = Column(Numeric, default=0)
    tp_number_target = Column(Integer, default=0)

    manual_new_gp = Column(Numeric, default=0)
    manual_return_gp = Column(Numeric, default=0)
    manual_sales_num = Column(Integer, default=0)
    manual_tp_gp = Column(Numeric, default=0)
    manual_tp_num = Column(Integer, default=0)
    manual_created_leads = Column(Integer, default=0)
    manual_taken_leads = Column(Integer, default=0)
    manual_total_leads = Column(Integer, default=0)
    manual_week1 = Column(Numeric, default=0)
    manual_week2 = Column(Numeric, default=0)
    manual_week3 = Column(Numeric, default=0)
    manual_week4 = Column(Numeric, default=0)

    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)


class PersonalTask(Base):
    __tablename__ = "personal_tasks"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    text = Column(Text, nullable=False)
    completed = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
