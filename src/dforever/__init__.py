"""dforever: host dPack mirrors, proxies and redirects from one YAML file."""

__version__ = "0.4.0"
