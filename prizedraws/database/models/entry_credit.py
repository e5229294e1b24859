from sqlalchemy import Column, String, BigInteger, UniqueConstraint

from prizedraws.database.db import Base, UTCDateTime
from prizedraws.utils.timezone import utcnow
from prizedraws.database.models.major_draw import ID_TYPE


class EntryCredit(Base):
    """
    Ledger of credited payments.

    A second credit for the same (payment_id, user_id) hits the unique constraint
    and is treated as a webhook replay.
    """

    __tablename__ = "entry_credits"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    payment_id = Column(String(255), nullable=False)
    user_id = Column(String(64), nullable=False)
    draw_kind = Column(String(16), nullable=False)  # major | mini
    draw_id = Column(ID_TYPE, nullable=False)
    entries = Column(BigInteger, nullable=False)
    source = Column(String(32), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('payment_id', 'user_id', name='uq_entry_credit_payment_user'),
    )

    def __repr__(self):
        return f"<EntryCredit(payment_id={self.payment_id}, user_id={self.user_id}, {self.draw_kind}:{self.draw_id}, entries={self.entries})>"
