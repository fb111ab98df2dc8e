from .session import register_session_commands
from .utils import (
    configure_logging,  # noqa: F401
    get_relaycord_version,  # noqa: F401
    load_client_config,  # noqa: F401
    raise_exit,  # noqa: F401
)

__all__ = ["register_session_commands"]
