from sqlalchemy import Column, String, BigInteger, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from prizedraws.database.db import Base, UTCDateTime
from prizedraws.utils.timezone import utcnow
from prizedraws.database.models.major_draw import ID_TYPE

# entry source -> counter column
MAJOR_DRAW_SOURCE_COLUMNS = {
    "membership": "membership_entries",
    "one-time-package": "one_time_package_entries",
    "upsell": "upsell_entries",
    "mini-draw": "mini_draw_entries",
    "cancellation-upsell": "cancellation_upsell_entries",
    "referral": "referral_entries",
}


class MajorDrawEntry(Base):
    """Per-user entry tally on a major draw."""

    __tablename__ = "major_draw_entries"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    draw_id = Column(ID_TYPE, ForeignKey("major_draws.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False)
    total_entries = Column(BigInteger, nullable=False, default=0)

    membership_entries = Column(BigInteger, nullable=False, default=0)
    one_time_package_entries = Column(BigInteger, nullable=False, default=0)
    upsell_entries = Column(BigInteger, nullable=False, default=0)
    mini_draw_entries = Column(BigInteger, nullable=False, default=0)
    cancellation_upsell_entries = Column(BigInteger, nullable=False, default=0)
    referral_entries = Column(BigInteger, nullable=False, default=0)

    first_added_date = Column(UTCDateTime, default=utcnow, nullable=False)
    last_updated_date = Column(UTCDateTime, default=utcnow, nullable=False)

    draw = relationship("MajorDraw", back_populates="entries")

    __table_args__ = (
        UniqueConstraint('draw_id', 'user_id', name='uq_major_draw_user'),
    )

    @property
    def entries_by_source(self) -> dict:
        return {source: getattr(self, column) or 0 for source, column in MAJOR_DRAW_SOURCE_COLUMNS.items()}

    def __repr__(self):
        return f"<MajorDrawEntry(draw_id={self.draw_id}, user_id={self.user_id}, total_entries={self.total_entries})>"
