"""vip-sync — VIP entitlement synchronization for game servers."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vip-sync")
except PackageNotFoundError:
    __version__ = "0.0.0"
