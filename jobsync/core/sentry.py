"""Sentry error tracking for escalated sync failures."""

import sentry_sdk

from jobsync.core.config import Settings, settings


def init_sentry(config: Settings | None = None) -> None:
    """Initialize Sentry error tracking if DSN is configured.

    Only escalated errors are reported (see report_escalation). Traces are
    not sampled and PII is never sent.
    """
    config = config or settings
    if not config.sentry_dsn:
        return

    sentry_sdk.init(
        dsn=config.sentry_dsn,
        environment=config.environment,
        traces_sample_rate=0.0,
        send_default_pii=False,
    )


def report_escalation(error: BaseException, **context: object) -> None:
    """Report an error that exhausted local recovery.

    A no-op until init_sentry() has configured a client.

    Args:
        error: The escalated error.
        **context: Extra fields attached to the Sentry event.
    """
    with sentry_sdk.new_scope() as scope:
        for name, value in context.items():
            scope.set_extra(name, value)
        sentry_sdk.capture_exception(error)
