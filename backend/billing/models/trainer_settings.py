"""Per-trainer billing settings consumed by the rate and invoice logic."""

from __future__ import annotations

import enum
import uuid

from sqlalchemy import Column, Enum as SAEnum, Integer, String

from ..database import Base
from ..db_types import Money

DEFAULT_INVOICE_DUE_DAYS = 30


class GroupSessionMatchingLogic(str, enum.Enum):
    """How appointments are matched to decide they form a group session."""

    EXACT_MATCH = "EXACT_MATCH"
    START_MATCH = "START_MATCH"
    END_MATCH = "END_MATCH"
    ANY_OVERLAP = "ANY_OVERLAP"


GROUP_MATCHING_ENUM = SAEnum(
    GroupSessionMatchingLogic,
    name="group_session_matching_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class TrainerSettings(Base):
    """Workspace-level defaults configured by a trainer."""

    __tablename__ = "trainer_settings"

    id = Column("trainer_settings_id", String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    trainer_id = Column(String(36), nullable=False, unique=True)
    workspace_id = Column(String(36), nullable=False)
    default_group_session_rate = Column(Money(), nullable=True)
    group_session_matching_logic = Column(
        GROUP_MATCHING_ENUM,
        nullable=False,
        default=GroupSessionMatchingLogic.EXACT_MATCH,
    )
    default_invoice_due_days = Column(Integer, nullable=False, default=DEFAULT_INVOICE_DUE_DAYS)
