from sqlalchemy import Column, String, Integer, BigInteger, Boolean, Text, JSON
from sqlalchemy.orm import relationship

from prizedraws.database.db import Base, UTCDateTime
from prizedraws.utils.timezone import utcnow

# BigInteger primary keys do not autoincrement on SQLite
ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")

MAJOR_DRAW_STATUSES = ("queued", "active", "frozen", "completed", "cancelled")


class MajorDraw(Base):
    __tablename__ = "major_draws"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    prize_name = Column(String, nullable=True)
    prize_value = Column(Integer, nullable=True)
    prize_details = Column(JSON, nullable=True)  # brand, images, specifications, terms

    status = Column(String(16), nullable=False, default="queued")  # queued | active | frozen | completed | cancelled
    activation_date = Column(UTCDateTime, nullable=True)  # entries open
    freeze_entries_at = Column(UTCDateTime, nullable=True)  # 30 minutes before draw_date
    draw_date = Column(UTCDateTime, nullable=True)

    configuration_locked = Column(Boolean, nullable=False, default=False)
    locked_at = Column(UTCDateTime, nullable=True)

    total_entries = Column(BigInteger, nullable=False, default=0)

    # at most one successor per draw
    predecessor_id = Column(ID_TYPE, nullable=True, unique=True)

    winner_user_id = Column(String(64), nullable=True)
    winner_entry_number = Column(BigInteger, nullable=True)
    winner_selected_at = Column(UTCDateTime, nullable=True)
    winner_selection_method = Column(String(32), nullable=True)  # manual | government-app

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    entries = relationship(
        "MajorDrawEntry",
        back_populates="draw",
        cascade="all, delete-orphan",
        order_by="MajorDrawEntry.id",
        lazy="selectin",
    )

    @property
    def has_winner(self) -> bool:
        return self.winner_user_id is not None

    def __repr__(self):
        return f"<MajorDraw(id={self.id}, name='{self.name}', status={self.status}, total_entries={self.total_entries})>"
