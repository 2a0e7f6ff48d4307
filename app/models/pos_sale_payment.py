"""POS sale payment model."""
from sqlalchemy import Column, String, Numeric, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from app.database import Base, BigIntPK


class PosSalePayment(Base):
    """
    POS Sale Payment - one tender used on a POS sale.

    A sale may be split across several methods (cash + card).
    """

    __tablename__ = 'pos_sale_payment'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    sale_id = Column(BigInteger, ForeignKey('pos_sale.id', ondelete='CASCADE'), nullable=False, index=True)
    payment_method = Column(String(50), nullable=False)  # raw POS vocabulary
    amount = Column(Numeric(12, 4), nullable=False)
    tip_amount = Column(Numeric(12, 4), nullable=False, default=0)

    # Relationships
    sale = relationship('PosSale', back_populates='payments')

    def __repr__(self):
        return f"<PosSalePayment(id={self.id}, sale_id={self.sale_id}, method={self.payment_method}, amount={self.amount})>"
