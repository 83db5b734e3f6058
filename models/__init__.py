from .db import db
from .user import User, Role, user_roles
from .login_attempt import LoginAttempt
from .lockout import LockoutRecord
from .two_factor_challenge import TwoFactorChallenge
from .security_setting import SecuritySetting
