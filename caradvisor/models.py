from datetime import datetime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator, Text
import json

from caradvisor.extensions import db


class JSONEncodedText(TypeDecorator):
    """
    Stores JSON as Text, validating it on assignment.
    Use JSONB on PostgreSQL, fallback to Text on other databases.
    """
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if isinstance(value, str):
                # Validate it's valid JSON
                json.loads(value)
                return value
            return json.dumps(value, ensure_ascii=False)
        return value

    def process_result_value(self, value, dialect):
        if isinstance(value, str):
            return json.loads(value)
        return value

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(Text())


class UserAccount(db.Model):
    """
    Per-user credit balance. Rows are created by the ledger on first access and
    mutated only through atomic ledger statements.
    """

    __tablename__ = "users"

    user_id = db.Column(db.String(128), primary_key=True)
    credits = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<UserAccount user_id={self.user_id} credits={self.credits}>"


class PurchaseRecord(db.Model):
    """
    One row per store purchase token. The primary key is the idempotency key:
    a token is credited at most once, ever. Rows are never updated.
    """

    __tablename__ = "purchases"

    purchase_token = db.Column(db.String(512), primary_key=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.String(128), nullable=False)
    product_meta = db.Column(JSONEncodedText, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<PurchaseRecord user_id={self.user_id} product_id={self.product_id} amount={self.amount}>"
