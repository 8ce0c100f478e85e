"""
Centralized logging configuration for the Green's-function to A-matrix pipeline.

Simplified logging system with:
- Two log categories: light_modeling (voxelization + A-matrix) and data_processing (temporal transforms)
- Console + file output with rotation
- Easy DEBUG/INFO/WARNING/ERROR level control
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

LOG_CATEGORIES = ['light_modeling', 'data_processing']


class GtoALogger:
    """
    Centralized logging for the GtoA pipeline.

    Features:
    - Automatic log directory creation
    - Log categories: light_modeling and data_processing
    - Console + file output with rotation
    - Run tracking (start/end banners keyed by run tag)
    """

    _loggers = {}
    _initialized = False

    @classmethod
    def setup_logging(cls,
                      log_dir: str = "logs",
                      log_level: str = "INFO",
                      max_file_size: int = 10 * 1024 * 1024,  # 10MB
                      backup_count: int = 5):
        """
        Initialize logging system.

        Args:
            log_dir: Directory for log files
            log_level: DEBUG, INFO, WARNING, or ERROR
            max_file_size: Max size before rotation (bytes)
            backup_count: Number of backup files to keep
        """
        if cls._initialized:
            return

        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        for category in LOG_CATEGORIES:
            (log_path / category).mkdir(exist_ok=True)

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level.upper()))

        # Clear existing handlers to prevent duplicates
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        # Suppress verbose third-party library logging
        for logger_name in ['h5py', 'h5py._conv', 'numexpr']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

        formatter = logging.Formatter(
            '%(asctime)s | %(name)-20s | %(levelname)-8s | %(funcName)-15s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        console_handler = logging.StreamHandler()
        console_handler.setLevel(getattr(logging, log_level.upper()))
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        cls._initialized = True
        cls._max_file_size = max_file_size
        cls._backup_count = backup_count

        root_logger.info("🚀 GtoA Logging Initialized")
        root_logger.info(f"📂 Log directory: {log_path.absolute()}")
        root_logger.info(f"📊 Log level: {log_level}")
        root_logger.info(f"🔄 File rotation: {max_file_size // (1024*1024)}MB, {backup_count} backups")

    @classmethod
    def get_logger(cls,
                   name: str,
                   category: Optional[str] = None,
                   log_dir: str = "logs") -> logging.Logger:
        """
        Get a logger for a specific component.

        Args:
            name: Logger name (usually module name)
            category: Log category for organized file output ('light_modeling', 'data_processing')
            log_dir: Base log directory

        Returns:
            Configured logger instance
        """
        if not cls._initialized:
            cls.setup_logging(log_dir)

        if name in cls._loggers:
            return cls._loggers[name]

        logger = logging.getLogger(name)

        # Category file handler only once per logger
        if category and not any(isinstance(h, logging.handlers.RotatingFileHandler) for h in logger.handlers):
            log_path = Path(log_dir) / category
            log_path.mkdir(parents=True, exist_ok=True)

            category_handler = logging.handlers.RotatingFileHandler(
                log_path / f"{category}.log",
                maxBytes=getattr(cls, '_max_file_size', 10 * 1024 * 1024),
                backupCount=getattr(cls, '_backup_count', 5)
            )
            category_handler.setLevel(logging.DEBUG)
            category_handler.setFormatter(logging.Formatter(
                '%(asctime)s | %(levelname)-8s | %(funcName)-15s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            logger.addHandler(category_handler)

        cls._loggers[name] = logger

        return logger

    @classmethod
    def log_run_start(cls, tag: str, config: dict):
        """Log the start of an A-matrix run."""
        logger = cls.get_logger("gtoa.run", "light_modeling")
        logger.info("=" * 60)
        logger.info(f"🧪 GtoA RUN STARTED: {tag}")
        logger.info("=" * 60)
        logger.info("📋 Configuration:")
        for key, value in config.items():
            logger.info(f"  {key}: {value}")
        logger.info("=" * 60)

    @classmethod
    def log_run_end(cls, tag: str, results: dict):
        """Log the completion of an A-matrix run."""
        logger = cls.get_logger("gtoa.run", "light_modeling")
        logger.info("=" * 60)
        logger.info(f"🏁 GtoA RUN COMPLETED: {tag}")
        logger.info("📊 Final Results:")
        for key, value in results.items():
            logger.info(f"  {key}: {value}")
        logger.info("=" * 60)


def get_light_logger(name: str) -> logging.Logger:
    """Get logger for light-modeling components (grid, location, interpolation, A-matrix)."""
    return GtoALogger.get_logger(name, "light_modeling")

def get_data_logger(name: str) -> logging.Logger:
    """Get logger for data processing components (temporal transforms)."""
    return GtoALogger.get_logger(name, "data_processing")
