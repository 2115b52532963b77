from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import BigInteger, CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.reque.constants import (
    ACTIVITY_LABELS,
    CLOSED_STATUSES,
    PRIORITY_LABELS,
    PRIORITY_NORMAL,
    STATUS_LABELS,
    STATUS_NEW,
)
from app.reque.models import Base, User


class Request(Base):
    __tablename__ = "requests"
    __table_args__ = (
        CheckConstraint(
            "status IN ('new', 'in_progress', 'under_review', 'completed', 'rejected')",
            name="ck_requests_status",
        ),
        CheckConstraint("priority IN ('normal', 'high', 'urgent')", name="ck_requests_priority"),
        Index("idx_requests_created_by", "created_by_user_id"),
        Index("idx_requests_assigned_to", "assigned_to_user_id"),
        Index("idx_requests_status", "status"),
        Index("idx_requests_priority", "priority"),
        Index("idx_requests_due_date", "due_date"),
        Index("idx_requests_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # new -> in_progress -> under_review -> completed | rejected (any order allowed)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_NEW)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default=PRIORITY_NORMAL)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assigned_to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    creator: Mapped[User] = relationship("User", foreign_keys=[created_by_user_id], lazy="selectin")
    assignee: Mapped[User | None] = relationship("User", foreign_keys=[assigned_to_user_id], lazy="selectin")

    comments: Mapped[list["RequestComment"]] = relationship(
        "RequestComment",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="RequestComment.id.desc()",
    )
    activity: Mapped[list["RequestActivity"]] = relationship(
        "RequestActivity",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="RequestActivity.id.desc()",
    )
    attachments: Mapped[list["RequestAttachment"]] = relationship(
        "RequestAttachment",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="RequestAttachment.id.desc()",
    )

    @property
    def status_label(self) -> str:
        return STATUS_LABELS.get(self.status, self.status)

    @property
    def priority_label(self) -> str:
        return PRIORITY_LABELS.get(self.priority, self.priority)

    def is_overdue(self, today: date | None = None) -> bool:
        if self.due_date is None or self.status in CLOSED_STATUSES:
            return False
        return self.due_date < (today or date.today())


class RequestComment(Base):
    __tablename__ = "request_comments"
    __table_args__ = (
        Index("idx_comments_request_id", "request_id"),
        Index("idx_comments_user_id", "user_id"),
        Index("idx_comments_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("requests.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    comment_text: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    request: Mapped[Request] = relationship("Request", back_populates="comments", lazy="selectin")
    author: Mapped[User] = relationship("User", lazy="selectin")

    @property
    def is_edited(self) -> bool:
        if self.updated_at is None or self.created_at is None:
            return False
        # Both timestamps are stamped separately on insert.
        return (self.updated_at - self.created_at).total_seconds() > 1


class RequestActivity(Base):
    """
    Append-only request timeline entry. Never updated or deleted on its own;
    rows go away only when the parent request is deleted.
    """

    __tablename__ = "request_activity"
    __table_args__ = (
        Index("idx_activity_request_id", "request_id"),
        Index("idx_activity_user_id", "user_id"),
        Index("idx_activity_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("requests.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    request: Mapped[Request] = relationship("Request", back_populates="activity", lazy="selectin")
    actor: Mapped[User | None] = relationship("User", lazy="selectin")

    @property
    def label(self) -> str:
        return ACTIVITY_LABELS.get(self.activity_type, self.activity_type.replace("_", " "))


class RequestAttachment(Base):
    __tablename__ = "request_attachments"
    __table_args__ = (
        Index("idx_attachments_request_id", "request_id"),
        Index("idx_attachments_uploaded_by", "uploaded_by_user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("requests.id", ondelete="CASCADE"), nullable=False)

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    uploaded_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    request: Mapped[Request] = relationship("Request", back_populates="attachments", lazy="selectin")
    uploader: Mapped[User] = relationship("User", lazy="selectin")
