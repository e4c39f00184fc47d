"""puck-economy — Twitch extension mini-game economy backend."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("puck-economy")
except PackageNotFoundError:
    __version__ = "0.0.0"
