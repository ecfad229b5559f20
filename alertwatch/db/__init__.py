from . import models  # noqa: F401
from .session import init_db

__all__ = [
    "models",
    "init_db",
]
