"""
Configuration management for the tunnel server.
Handles reading, writing, and validating configuration from JSON files.
"""
import os
import json
import copy
import shutil
import logging
import ipaddress
from typing import Dict, Any, Optional, List


DEFAULT_CONFIG: Dict[str, Any] = {
    "version": "1.0.0",
    "server": {
        "bind_address": "0.0.0.0",
        "bind_port": 12345,
        "backlog": 5,
        "poll_interval": 1.0,
        "log_level": "INFO",
        "log_file": "tunnel_server.log",
        "log_traffic": False
    },
    "tunnel": {
        "interface_prefix": "tun",
        "local_address": "10.8.0.1",
        "netmask": "255.255.255.0",
        "mtu": 1400
    },
    "forwarding": {
        "enabled": False,
        "public_interface": "eth0",
        "tunnel_network": "10.8.0.0/24",
        "tcp_ports": [25]
    },
    "status": {
        "enabled": False,
        "host": "127.0.0.1",
        "port": 5000
    }
}


class ConfigManager:
    """
    Configuration manager for tunnel server settings
    """
    DEFAULT_CONFIG_PATH = "config.json"

    def __init__(self, config_path: Optional[str] = None, create: bool = False):
        """
        Initialize the configuration manager

        Args:
            config_path: Path to the configuration file (None for default)
            create: Write the defaults to disk when the file does not exist
        """
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self.config: Dict[str, Any] = {}
        self.logger = logging.getLogger("config")

        self.load(create=create)

    def load(self, create: bool = False) -> bool:
        """
        Load configuration from file, layered over the defaults

        Returns:
            True if the file was read (or created), False if defaults were used
        """
        self.config = copy.deepcopy(DEFAULT_CONFIG)

        if not os.path.exists(self.config_path):
            self.logger.warning(f"Configuration file {self.config_path} not found, using defaults")
            if create:
                return self.save()
            return False

        try:
            with open(self.config_path, 'r') as f:
                self.update(json.load(f))
            self.logger.info(f"Configuration loaded from {self.config_path}")
            return True
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to load configuration: {e}")
            return False

    def save(self) -> bool:
        """
        Save configuration to file

        Returns:
            True if successful, False otherwise
        """
        try:
            # Create backup if file exists
            if os.path.exists(self.config_path):
                backup_path = f"{self.config_path}.bak"
                shutil.copy2(self.config_path, backup_path)
                self.logger.debug(f"Created backup of configuration at {backup_path}")

            with open(self.config_path, 'w') as f:
                json.dump(self.config, f, indent=4)

            self.logger.info(f"Configuration saved to {self.config_path}")
            return True

        except OSError as e:
            self.logger.error(f"Failed to save configuration: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value

        Args:
            key: Configuration key (dot notation for nested keys)
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value = self.config
        try:
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value

        Args:
            key: Configuration key (dot notation for nested keys)
            value: Value to set
        """
        keys = key.split('.')
        config = self.config

        for k in keys[:-1]:
            config = config.setdefault(k, {})

        config[keys[-1]] = value

    def update(self, config_dict: Dict[str, Any]) -> None:
        """Merge a (possibly partial) configuration dictionary"""
        self._recursive_update(self.config, config_dict)

    def _recursive_update(self, target: Dict[str, Any], source: Dict[str, Any]) -> None:
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._recursive_update(target[key], value)
            else:
                target[key] = value

    def validate(self) -> List[str]:
        """
        Validate the configuration

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        for key in ("server.bind_port", "status.port"):
            port = self.get(key)
            if not isinstance(port, int) or isinstance(port, bool) or not 0 <= port <= 65535:
                errors.append(f"{key} must be an integer between 0 and 65535")

        poll_interval = self.get("server.poll_interval")
        if not isinstance(poll_interval, (int, float)) or poll_interval <= 0:
            errors.append("server.poll_interval must be a positive number")

        prefix = self.get("tunnel.interface_prefix")
        if not prefix or not isinstance(prefix, str):
            errors.append("tunnel.interface_prefix is required")

        try:
            ipaddress.IPv4Interface(f"{self.get('tunnel.local_address')}/{self.get('tunnel.netmask')}")
        except ValueError as e:
            errors.append(f"tunnel.local_address/netmask is invalid: {e}")

        mtu = self.get("tunnel.mtu")
        if mtu is not None and (not isinstance(mtu, int) or not 68 <= mtu <= 65535):
            errors.append("tunnel.mtu must be an integer between 68 and 65535")

        if self.get("forwarding.enabled"):
            try:
                ipaddress.IPv4Network(self.get("forwarding.tunnel_network"), strict=False)
            except (ValueError, TypeError) as e:
                errors.append(f"forwarding.tunnel_network is invalid: {e}")
            ports = self.get("forwarding.tcp_ports")
            if not isinstance(ports, list) or not all(isinstance(p, int) and 0 < p <= 65535 for p in ports):
                errors.append("forwarding.tcp_ports must be a list of TCP ports")

        return errors
