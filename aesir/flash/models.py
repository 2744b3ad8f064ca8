"""Flash ORM models.

This module defines the FlashRecord model, the history of flash sessions
run on this host.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from aesir.db import Base
from aesir.types import FlashStatus


class FlashRecord(Base):
    """ORM model for flash sessions.

    Attributes:
        id: Primary key.
        requested_at: Timestamp when the flash was requested.
        started_at: Timestamp when the session started.
        finished_at: Timestamp when the session reached a terminal state.
        status: Flash status (pending, running, succeeded, failed).
        backend: Backend that ran the session.
        device_id: Device identifier ('bus:address').
        device_description: USB description of the device.
        slots: Comma-separated firmware slots selected.
        partitions_flashed: Comma-separated partitions written, in order.
        total_bytes: Declared bytes across all plans.
        error_code: Error code if the flash failed.
        error_component: Component the failure originated in.
        error_message: Error message if the flash failed.
    """

    __tablename__ = "flash_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Timing
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Status
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FlashStatus.PENDING.value, index=True
    )

    # Session details
    backend: Mapped[str | None] = mapped_column(String(50), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    device_description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    slots: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    partitions_flashed: Mapped[str] = mapped_column(Text, nullable=False, default="")
    total_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Errors
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_component: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_flash_sessions_status_requested", "status", "requested_at"),
    )

    def __repr__(self) -> str:
        """Return string representation of FlashRecord."""
        return (
            f"<FlashRecord(id={self.id}, device_id='{self.device_id}', "
            f"backend='{self.backend}', status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this flash as running."""
        self.status = FlashStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this flash as succeeded."""
        self.status = FlashStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self,
        error_code: str | None = None,
        message: str | None = None,
        component: str | None = None,
    ) -> None:
        """Mark this flash as failed.

        Args:
            error_code: Stable error code.
            message: Error message details.
            component: Component the failure originated in.
        """
        self.status = FlashStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_code:
            self.error_code = error_code
        if message:
            self.error_message = message
        if component:
            self.error_component = component

    def is_succeeded(self) -> bool:
        """Check if this flash succeeded."""
        return self.status == FlashStatus.SUCCEEDED.value

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "requested_at": (
                self.requested_at.isoformat() if self.requested_at else None
            ),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status,
            "backend": self.backend,
            "device_id": self.device_id,
            "device_description": self.device_description,
            "slots": self.slots.split(",") if self.slots else [],
            "partitions_flashed": (
                self.partitions_flashed.split(",") if self.partitions_flashed else []
            ),
            "total_bytes": self.total_bytes,
            "error_code": self.error_code,
            "error_component": self.error_component,
            "error_message": self.error_message,
        }


__all__ = ["FlashRecord"]
