from flask_limiter import Limiter  # type: ignore
from flask_limiter.util import get_remote_address  # type: ignore
from flask_login import LoginManager  # type: ignore
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


class BaseModel(db.Model):  # type: ignore
    __abstract__ = True


login_manager = LoginManager()
migrate = Migrate()
# Limits are applied per endpoint (login, manual sync) rather than globally.
limiter = Limiter(key_func=get_remote_address)
