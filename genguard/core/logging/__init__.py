from .logger import (
    clear_job_id,
    get_job_id,
    get_logger,
    log_stage,
    set_job_id,
    setup_logging,
)

__all__ = [
    "clear_job_id",
    "get_job_id",
    "get_logger",
    "log_stage",
    "set_job_id",
    "setup_logging",
]
