"""Student profile models."""
import uuid

from sqlalchemy import Enum, Float, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.config.database import Base
from src.core.geo import is_valid_coordinate
from src.core.models import TimestampMixin, UUIDMixin
from src.domains.users.models import Gender


class StudentProfile(Base, UUIDMixin, TimestampMixin):
    """Student home address, pre-geocoded by the profile service."""

    __tablename__ = "student_profiles"

    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    gender: Mapped[Gender | None] = mapped_column(
        Enum(Gender, create_constraint=False, native_enum=False),
        nullable=True,
    )
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Relationships
    student = relationship("User", lazy="selectin")

    @property
    def has_valid_location(self) -> bool:
        return is_valid_coordinate(self.latitude, self.longitude)
