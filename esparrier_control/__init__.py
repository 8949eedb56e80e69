# esparrier_control/__init__.py
"""Configuration and firmware update tool for the Esparrier USB KVM."""

__version__ = "0.1.0"

from .device import DeviceDescriptor, DeviceHandle, discover, open_device  # noqa: E402
from .exception import EsparrierError, ErrorKind  # noqa: E402
from .models import DeviceConfig, DeviceState  # noqa: E402

__all__ = [
    "__version__",
    "DeviceConfig",
    "DeviceDescriptor",
    "DeviceHandle",
    "DeviceState",
    "ErrorKind",
    "EsparrierError",
    "discover",
    "open_device",
]
