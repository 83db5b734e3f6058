from datetime import datetime
from models.db import db


class SecuritySetting(db.Model):
    __tablename__ = "security_settings"

    key = db.Column(db.String(64), primary_key=True)
    value_json = db.Column(db.Text, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
