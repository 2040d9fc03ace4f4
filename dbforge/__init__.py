"""
dbforge - Build PostgreSQL databases from extension scripts.

Concatenates each extension's manifest-ordered SQL scripts and generated
ORM statements into one aggregate per database, then runs the aggregates
against their databases concurrently.
"""

__version__ = "0.1.0"


__all__ = ["DbforgeConfig", "load_config", "get_dbforge_home", "BuildSpec", "build_databases"]

from .config import DbforgeConfig, load_config, get_dbforge_home
from .build_spec import BuildSpec
from .builder import build_databases
