from .auth import PasskeyCeremony
from .ceremony import CeremonyOrchestrator
from .engine import ProtocolEngine
from .errors import CeremonyError, CeremonyResult, ErrorKind
from .session_cache import CeremonyKind, InMemorySessionCache, RedisSessionCache, session_key
from .storage import InMemoryStorageAdapter, SQLAlchemyStorageAdapter
from .utils import login_required, get_current_user, is_authenticated, logout

__version__ = '0.1.0'

__all__ = [
    'PasskeyCeremony',
    'CeremonyOrchestrator',
    'ProtocolEngine',
    'CeremonyError',
    'CeremonyResult',
    'ErrorKind',
    'CeremonyKind',
    'session_key',
    'InMemorySessionCache',
    'RedisSessionCache',
    'InMemoryStorageAdapter',
    'SQLAlchemyStorageAdapter',
    'login_required',
    'get_current_user',
    'is_authenticated',
    'logout',
]
