from .base import register_backend
from .local import LocalSubprocessBackend

register_backend("local", lambda: LocalSubprocessBackend())
