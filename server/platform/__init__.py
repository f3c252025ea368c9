"""
Platform-specific implementations for the tunnel server.
Provides TUN interface management and forwarding setup (Linux only).
"""

from server.platform.linux import (
    TunInterface, NetworkDeviceManager, DeviceError, DeviceUnavailable,
    ConfigurationFailed, setup_forwarding, teardown_forwarding
)
