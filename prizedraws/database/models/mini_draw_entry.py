from sqlalchemy import Column, String, BigInteger, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from prizedraws.database.db import Base, UTCDateTime
from prizedraws.utils.timezone import utcnow
from prizedraws.database.models.major_draw import ID_TYPE

MINI_DRAW_SOURCE_COLUMNS = {
    "mini-draw-package": "mini_draw_package_entries",
    "free-entry": "free_entry_entries",
}


class MiniDrawEntry(Base):
    __tablename__ = "mini_draw_entries"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    draw_id = Column(ID_TYPE, ForeignKey("mini_draws.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False)
    total_entries = Column(BigInteger, nullable=False, default=0)

    mini_draw_package_entries = Column(BigInteger, nullable=False, default=0)
    free_entry_entries = Column(BigInteger, nullable=False, default=0)

    first_added_date = Column(UTCDateTime, default=utcnow, nullable=False)
    last_updated_date = Column(UTCDateTime, default=utcnow, nullable=False)

    draw = relationship("MiniDraw", back_populates="entries")

    __table_args__ = (
        UniqueConstraint('draw_id', 'user_id', name='uq_mini_draw_user'),
    )

    @property
    def entries_by_source(self) -> dict:
        return {source: getattr(self, column) or 0 for source, column in MINI_DRAW_SOURCE_COLUMNS.items()}
