"""User models for the TutorLink platform."""
import enum

from sqlalchemy import Boolean, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from src.config.database import Base
from src.core.models import TimestampMixin, UUIDMixin


class Gender(str, enum.Enum):
    """User gender options."""

    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class User(Base, UUIDMixin, TimestampMixin):
    """Platform account shared by students, trainers and admins."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    gender: Mapped[Gender | None] = mapped_column(
        Enum(Gender, name="gender_enum", values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
