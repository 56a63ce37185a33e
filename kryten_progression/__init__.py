"""kryten-progression: student level, cosmetic unlock and daily aura microservice."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kryten-progression")
except PackageNotFoundError:
    __version__ = "0.0.0"
