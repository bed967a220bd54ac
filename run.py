#!/usr/bin/env python3
"""Backup daemon runner"""
import os
import time
import signal
import logging

from restore import configure_logging
from restore.config import get_config, load_settings
from restore.state import SystemState
from restore.monitoring import create_watcher
from restore.scheduler import init_scheduler, start_scheduler, stop_scheduler
from restore.utils.password import PromptPasswordProvider, StaticPasswordProvider


def build_password_provider(settings):
    """RESTORE_PASSWORD wins over prompting; None when encryption is off."""
    if not settings.encryption.enabled:
        return None

    password = os.environ.get('RESTORE_PASSWORD')
    if password:
        return StaticPasswordProvider(password)

    return PromptPasswordProvider(
        salt=settings.encryption.salt,
        iterations=settings.encryption.key_derivation_iterations,
        verification_token=settings.encryption.verification_token,
    )


def main():
    app_config = get_config()
    configure_logging(app_config.LOG_DIR, debug=app_config.DEBUG)
    logger = logging.getLogger('restore.daemon')

    settings = load_settings(app_config.CONFIG_FILE)
    state = SystemState(app_config.STATE_FILE)
    state.load()

    password_provider = build_password_provider(settings)
    if password_provider is not None:
        # Ask once up front so scheduled jobs never block on input
        password_provider.get_password()

    init_scheduler(settings, state, password_provider)
    start_scheduler()

    watcher = create_watcher(settings, state, password_provider)
    watcher.start()

    running = True

    def _shutdown(signum, frame):
        nonlocal running
        logger.info(f"Received signal {signum}, shutting down")
        running = False

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        while running:
            time.sleep(1)
    finally:
        watcher.stop()
        stop_scheduler()
        state.save()


if __name__ == '__main__':
    main()
