"""Remote transports for jmapc."""

from .jmap import JMAP_TYPES, JmapTransport, JmapType, validate_backend_url

__all__ = ["JmapTransport", "JmapType", "JMAP_TYPES", "validate_backend_url"]
