from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Float,
    Boolean,
    ForeignKey,
    Index,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    product_id = Column(Integer, nullable=False, index=True)

    # pending | awaiting_confirmation | paid | delivered | cancelled
    status = Column(String(32), nullable=False, default="pending")

    # buyer-submitted payment evidence, checked by an admin
    payment_method = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    payment_sender = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)
    paid_at = Column(Float, nullable=True)


class DigitalKey(Base):
    __tablename__ = "digital_keys"
    id = Column(Integer, primary_key=True, autoincrement=True)
    key_value = Column(String(500), nullable=False, unique=True)
    # nullable only for legacy rows; new keys always carry a product
    product_id = Column(Integer, nullable=True)

    # is_assigned == (assigned_to_order_id is not None)
    is_assigned = Column(Boolean, nullable=False, default=False)
    assigned_to_order_id = Column(
        Integer,
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    assigned_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        # FIFO pick: oldest available key of a product
        Index("digital_keys_pick_idx", "product_id", "is_assigned",
              "created_at", "id"),
    )


class SystemConfig(Base):
    __tablename__ = "system_configs"
    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    # string | number | boolean | json
    type = Column(String(16), nullable=False, default="string")
    category = Column(String(50), nullable=False, default="general",
                      index=True)
    description = Column(String(255), nullable=True)
    is_editable = Column(Boolean, nullable=False, default=True)
    updated_by = Column(Integer, nullable=True)
    updated_at = Column(Float, nullable=True)


def key_view(k: DigitalKey) -> dict:
    return {
        "id": k.id,
        "key_value": k.key_value,
        "product_id": k.product_id,
        "is_assigned": bool(k.is_assigned),
        "assigned_to_order_id": k.assigned_to_order_id,
        "assigned_at": k.assigned_at,
        "created_at": k.created_at,
    }


def order_view(o: Order, keys=()) -> dict:
    return {
        "id": o.id,
        "user_id": o.user_id,
        "product_id": o.product_id,
        "status": o.status,
        "payment_method": o.payment_method,
        "transaction_id": o.transaction_id,
        "payment_sender": o.payment_sender,
        "created_at": o.created_at,
        "paid_at": o.paid_at,
        "keys": [key_view(k) for k in keys],
    }
