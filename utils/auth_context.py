from functools import wraps
from flask import g, jsonify, session

from models import db
from models.user import User

SESSION_USER_KEY = "user_id"


def load_current_user():
    user_id = session.get(SESSION_USER_KEY)
    g.user = db.session.get(User, user_id) if user_id else None
    if user_id and g.user is None:
        session.pop(SESSION_USER_KEY, None)

def login_user(user: User):
    session.clear()
    session[SESSION_USER_KEY] = user.id
    session.permanent = True

def logout_user():
    session.clear()

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper
