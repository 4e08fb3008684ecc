"""
Headless runner for S3 Mirror.

Builds the pipeline from the command-line arguments and the JSON config,
then runs in the foreground until SIGINT/SIGTERM.
"""

import logging
import logging.handlers
import signal
import sys
import time

from s3_mirror import __app_name__, __version__
from s3_mirror.config import Config, get_log_path
from s3_mirror.errors import SetupError
from s3_mirror.pipeline import MirrorPipeline
from s3_mirror.store import RemoteStore, S3Store, build_s3_client

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(cfg: Config) -> None:
    """Configure rotating file log and stderr handler."""
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    fmt = logging.Formatter(_LOG_FORMAT)

    # Rotating file handler
    max_bytes = cfg.max_log_size_mb * 1024 * 1024
    fh = logging.handlers.RotatingFileHandler(
        str(get_log_path()),
        maxBytes=max_bytes,
        backupCount=cfg.log_backup_count,
        encoding="utf-8",
    )
    fh.setLevel(level)
    fh.setFormatter(fmt)
    root_logger.addHandler(fh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)

    # boto's debug output drowns the pipeline's own messages
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)


def build_pipeline(
    bucket: str,
    local_directory: str,
    prefix: str,
    cfg: Config,
    store: RemoteStore | None = None,
) -> MirrorPipeline:
    """Create (but do not start) a pipeline configured from *cfg*."""
    if store is None:
        store = S3Store(build_s3_client(
            region=cfg.aws_region,
            profile=cfg.aws_profile,
            endpoint_url=cfg.endpoint_url,
            connect_timeout=cfg.connect_timeout,
            read_timeout=cfg.read_timeout,
        ))
    return MirrorPipeline(
        root=local_directory,
        store=store,
        bucket=bucket,
        prefix=prefix,
        quiescence=cfg.quiescence_seconds,
        max_concurrent=cfg.max_concurrent_uploads,
        retry_count=cfg.retry_count,
        retry_delay=cfg.retry_delay,
        max_backoff=cfg.max_backoff,
        include_patterns=cfg.include_patterns or None,
        exclude_patterns=cfg.exclude_patterns or None,
    )


def run_foreground(
    bucket: str,
    local_directory: str,
    prefix: str,
    cfg: Config | None = None,
    store: RemoteStore | None = None,
) -> int:
    """Run the mirror until SIGINT/SIGTERM.  Returns the process exit code."""
    cfg = cfg or Config()
    setup_logging(cfg)
    logger.info("%s %s starting.", __app_name__, __version__)
    logger.info("Bucket name: %s", bucket)
    logger.info("Local directory: %s", local_directory)
    logger.info("Key prefix: %s", prefix)

    try:
        pipeline = build_pipeline(bucket, local_directory, prefix, cfg, store)
        pipeline.start()
    except SetupError as exc:
        logger.error("Cannot start: %s", exc)
        return 1
    except Exception:
        logger.exception("Failed to set up the mirror.")
        return 1

    stop = False

    def _handler(sig, frame):
        nonlocal stop
        stop = True

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    logger.info("%s running (press Ctrl-C to stop)", __app_name__)
    while not stop:
        time.sleep(1)
    pipeline.stop()
    logger.info("%s stopped.", __app_name__)
    return 0
