"""Wire the ledger's two log files."""

from ledger.core.action_logging import make_log_action, make_log_exception

ACTION_LOG_NAME = "ledger-actions.log"
SYSTEM_LOG_NAME = "ledger-system.log"


def build_loggers(display_tz, log_dir):
    """Return ``(log_action, log_system, log_exception)`` writing under ``log_dir``.

    User-triggered actions go to the action log. Scheduler ticks, boot, and
    exceptions go to the system log so failures stay out of the action trail.
    """
    log_action = make_log_action(display_tz, log_dir / ACTION_LOG_NAME)
    log_system = make_log_action(display_tz, log_dir / SYSTEM_LOG_NAME)
    return log_action, log_system, make_log_exception(log_system)
