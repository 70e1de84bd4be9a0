"""Small shared helpers."""

import os
import socket
import uuid
from pathlib import Path


def get_jmapc_home() -> Path:
    """Return the jmapc home directory (``$JMAPC_HOME`` or ``~/.jmapc``)."""
    override = os.environ.get("JMAPC_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".jmapc"


def new_holder_id() -> str:
    """Lease holder id unique to this process and call."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
