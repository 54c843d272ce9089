from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from synexa_gateway.database import Base


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, index=True)
    plan = Column(String, nullable=False, default="FREE")  # FREE, PRO_MONTHLY, PRO_YEARLY
    credits = Column(Integer, nullable=False, default=0)
    daily_usage_chat = Column(Integer, nullable=False, default=0)
    daily_usage_image = Column(Integer, nullable=False, default=0)
    daily_usage_video = Column(Integer, nullable=False, default=0)
    daily_usage_reset_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workspaces = relationship("Workspace", back_populates="account", order_by="Workspace.created_at")


class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(String, primary_key=True, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    account = relationship("Account", back_populates="workspaces")
