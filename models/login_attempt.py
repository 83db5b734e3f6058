from datetime import datetime
from models.db import db

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"


class LoginAttempt(db.Model):
    __tablename__ = "login_attempts"

    # Append-only: rows are inserted once and never updated
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    address = db.Column(db.String(64), nullable=False, index=True)
    username = db.Column(db.String(150), nullable=False)
    outcome = db.Column(db.String(10), nullable=False)  # success, failure

    def to_dict(self):
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "address": self.address,
            "username": self.username,
            "outcome": self.outcome,
        }
