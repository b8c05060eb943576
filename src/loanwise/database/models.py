"""SQLAlchemy database models."""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """Model for users (staff members and regular borrowers' helpers)."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_staff: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, name='{self.name}', is_staff={self.is_staff})>"


class Item(Base):
    """Model for shared items that can be loaned out."""

    __tablename__ = "items"
    __table_args__ = (
        CheckConstraint("total_qty >= 0", name="ck_items_total_qty_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    category: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    total_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    if TYPE_CHECKING:
        loans: Mapped[list["Loan"]]
    else:
        loans = relationship("Loan", back_populates="item")

    def __repr__(self) -> str:
        return f"<Item(id={self.id}, name='{self.name}', total_qty={self.total_qty})>"


class Lender(Base):
    """Model for people items are lent to."""

    __tablename__ = "lenders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Lender(id={self.id}, name='{self.name}')>"


class Loan(Base):
    """Model for borrow events. A loan is open while returned_at is NULL."""

    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_loans_qty_positive"),
        # Serves the open-loan sum behind every availability read
        Index(
            "ix_loans_open_item_id",
            "item_id",
            postgresql_where="returned_at IS NULL",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    item_id: Mapped[int] = mapped_column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    lender_id: Mapped[int] = mapped_column(Integer, ForeignKey("lenders.id"), nullable=False, index=True)
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    room: Mapped[str] = mapped_column(String, nullable=False, default="")
    staff_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    borrowed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    returned_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    item = relationship("Item", back_populates="loans")
    lender = relationship("Lender")
    staff = relationship("User")

    @property
    def is_open(self) -> bool:
        return self.returned_at is None

    def __repr__(self) -> str:
        return f"<Loan(id={self.id}, item_id={self.item_id}, qty={self.qty}, returned_at={self.returned_at})>"
