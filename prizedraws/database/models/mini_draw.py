from sqlalchemy import Column, String, Integer, BigInteger, Boolean, Text
from sqlalchemy.orm import relationship

from prizedraws.database.db import Base, UTCDateTime
from prizedraws.utils.timezone import utcnow
from prizedraws.database.models.major_draw import ID_TYPE

MINI_DRAW_STATUSES = ("active", "completed", "cancelled")


class MiniDraw(Base):
    __tablename__ = "mini_draws"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    prize_name = Column(String, nullable=True)
    prize_value = Column(Integer, nullable=True)
    prize_category = Column(String(64), nullable=True)  # vehicle, electronics, travel, cash, experience

    status = Column(String(16), nullable=False, default="active")  # active | completed | cancelled
    minimum_entries = Column(BigInteger, nullable=False)  # draw closes when reached
    total_entries = Column(BigInteger, nullable=False, default=0)

    configuration_locked = Column(Boolean, nullable=False, default=False)
    locked_at = Column(UTCDateTime, nullable=True)

    winner_user_id = Column(String(64), nullable=True)
    winner_entry_number = Column(BigInteger, nullable=True)
    winner_selected_at = Column(UTCDateTime, nullable=True)
    winner_selection_method = Column(String(32), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    entries = relationship(
        "MiniDrawEntry",
        back_populates="draw",
        cascade="all, delete-orphan",
        order_by="MiniDrawEntry.id",
        lazy="selectin",
    )

    @property
    def remaining_entries(self) -> int:
        return max((self.minimum_entries or 0) - (self.total_entries or 0), 0)

    def __repr__(self):
        return f"<MiniDraw(id={self.id}, name='{self.name}', status={self.status}, total_entries={self.total_entries}/{self.minimum_entries})>"
