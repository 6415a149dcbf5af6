from sqlalchemy import Column, BigInteger, String, Integer, DateTime
from models.base import Base, BigIntegerKey, utcnow


class Customer(Base):
    """
    Business table populated by the customer import job.

    Field Mapping Strategy (delimited source):
    - customer_id -> customer_id (unique, upsert key)
    - name -> name
    - age -> age
    - email -> email
    """
    __tablename__ = "customers"

    id = Column(BigIntegerKey, primary_key=True, autoincrement=True)
    customer_id = Column(BigInteger, nullable=False, unique=True, index=True)

    name = Column(String(200), nullable=False)
    age = Column(Integer, nullable=True)
    email = Column(String(320), nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
