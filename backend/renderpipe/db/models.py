"""SQLAlchemy 2.0 ORM models for the render pipeline."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, JSON, Integer, Float, Boolean, ForeignKey, Index, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Plan(Base):
    """Approved content plan feeding a render.

    Written once at intake and read-only while any run executes.
    """
    __tablename__ = "plans"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(Text)
    voice: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    style_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    caption_style: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    approved: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    scenes: Mapped[list["PlanScene"]] = relationship(
        back_populates="plan",
        order_by="PlanScene.idx",
        cascade="all, delete-orphan",
    )


class PlanScene(Base):
    """A single scene within an approved plan."""
    __tablename__ = "plan_scenes"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("plans.id"), index=True)
    idx: Mapped[int] = mapped_column(Integer)
    narration_text: Mapped[str] = mapped_column(Text)
    visual_prompt: Mapped[str] = mapped_column(Text)
    on_screen_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    effect: Mapped[str] = mapped_column(String(30), default="static")
    duration_target_sec: Mapped[float] = mapped_column(Float)

    plan: Mapped[Plan] = relationship(back_populates="scenes")


class Run(Base):
    """One end-to-end execution attempt of the pipeline for an approved plan.

    log, checkpoint and artifacts are JSON columns that are only ever
    read-modify-written through the per-run serializer in
    renderpipe.services.run_log.
    """
    __tablename__ = "runs"
    __table_args__ = (
        Index("ix_runs_status_queued_at", "status", "queued_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("plans.id"), index=True)
    status: Mapped[str] = mapped_column(String(20), default="queued")
    progress: Mapped[int] = mapped_column(Integer, default=0)
    current_step: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    log: Mapped[list] = mapped_column(JSON, default=list)
    checkpoint: Mapped[list] = mapped_column(JSON, default=list)
    artifacts: Mapped[dict] = mapped_column(JSON, default=dict)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failed_step: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    queued_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )
