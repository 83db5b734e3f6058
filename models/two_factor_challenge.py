from datetime import datetime
from models.db import db


class TwoFactorChallenge(db.Model):
    __tablename__ = "two_factor_challenges"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    username = db.Column(db.String(150), nullable=False)
    address = db.Column(db.String(64), nullable=True)
    method = db.Column(db.String(10), nullable=False)  # email, totp

    # store only hashes, never the raw token or code
    token_hash = db.Column(db.String(128), unique=True, nullable=False, index=True)
    code_hash = db.Column(db.String(128), nullable=True)  # email method only

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    verified = db.Column(db.Boolean, default=False, nullable=False)
    verified_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship("User")
