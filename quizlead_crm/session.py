from dataclasses import dataclass
from functools import wraps
from flask_login import current_user
from quizlead_crm.models import ROLE_ADMIN
from quizlead_crm.errors import AuthenticationError, Forbidden


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation. Services receive this instead of reading globals."""
    user_id: int
    role: str
    name: str = ''

    @property
    def is_admin(self):
        return self.role == ROLE_ADMIN

    @classmethod
    def from_user(cls, user):
        return cls(user_id=user.id, role=user.role, name=user.name)


def current_actor():
    if not current_user.is_authenticated:
        raise AuthenticationError('Autenticação necessária.')
    return Actor.from_user(current_user)


def admin_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not current_actor().is_admin:
            raise Forbidden('Acesso restrito a administradores.')
        return f(*args, **kwargs)
    return decorated
