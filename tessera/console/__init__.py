"""Rich, structured console output for tessera.

Usage:
    from tessera.console import logger

    logger.info("Loaded config")
    logger.warning("3 queries found no keys in any LSH round")
    logger.key_value({"variant": "lsh", "n_rounds": 2}, title="AttentionLayer")
"""
from tessera.console.logger import Logger, get_logger

# Module-level singleton for convenient import
logger = get_logger()

__all__ = ["Logger", "get_logger", "logger"]
