from datetime import datetime
from models.db import db


class LockoutRecord(db.Model):
    __tablename__ = "lockouts"

    id = db.Column(db.Integer, primary_key=True)
    address = db.Column(db.String(64), unique=True, nullable=False, index=True)

    failure_count = db.Column(db.Integer, default=0, nullable=False)
    lockout_until = db.Column(db.DateTime, nullable=True, index=True)
    escalation_level = db.Column(db.Integer, default=0, nullable=False)

    last_failure_at = db.Column(db.DateTime, nullable=True)
    cleared_at = db.Column(db.DateTime, nullable=True)

    # bumped on every write; writers only succeed against the version they read
    version = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
