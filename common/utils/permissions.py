"""
Permission handling utilities for the tunnel server.
"""
import os
import logging


def check_admin_privileges() -> bool:
    """
    Check if the process runs as root

    Creating TUN interfaces and running ip/iptables needs root (or
    CAP_NET_ADMIN), so the server warns early when it is missing.

    Returns:
        True if running with root privileges, False otherwise
    """
    try:
        return os.geteuid() == 0
    except AttributeError as e:
        logging.getLogger("permissions").error(f"Error checking admin privileges: {e}")
        return False
