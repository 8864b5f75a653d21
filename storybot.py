# storybot.py - Start the story engine and its HTTP API
import sys
import signal
import logging

import config
from core.storybot_logging import setup_logging

logger = logging.getLogger(__name__)


def build_engine():
    """Wire stores, notification dispatcher and engine from the current settings."""
    from core.notifications import LoggingSink, NotificationDispatcher, WebhookSink
    from core.storage import ContentStore, Database, SessionStore, StoryStore
    from core.story_engine import PackLimits, StoryEngine

    db = Database(config.DB_PATH)
    story_store = StoryStore(db)
    content_store = ContentStore(config.STORY_FILES_DIR, story_store)
    session_store = SessionStore(db)

    if config.get('NOTIFICATION_WEBHOOK_URL'):
        sink = WebhookSink(config.NOTIFICATION_WEBHOOK_URL, timeout=config.NOTIFICATION_TIMEOUT,
                           api_key=config.get('API_KEY'))
    else:
        sink = LoggingSink()
    dispatcher = NotificationDispatcher(sink)

    limits = PackLimits(
        message_limit=config.MESSAGE_CONTENT_CHARACTER_LIMIT,
        embed_limit=config.EMBED_DESCRIPTION_CHARACTER_LIMIT,
        button_label_limit=config.BUTTON_LABEL_CHARACTER_LIMIT,
        buttons_per_row=config.ACTION_ROW_BUTTON_LIMIT,
        max_rows=config.MESSAGE_ACTION_ROW_LIMIT,
    )
    engine = StoryEngine(
        story_store, content_store, session_store, dispatcher,
        time_budget_ms=config.STORY_TIME_BUDGET_MS,
        loop_threshold=config.POTENTIAL_LOOP_THRESHOLD,
        max_last_lines=config.MAX_LAST_LINES_TO_REPORT,
        choice_limit=limits.choice_limit,
        report_part_limit=config.EMBED_DESCRIPTION_CHARACTER_LIMIT,
    )
    return engine, dispatcher, limits


def run():
    setup_logging(config.LOG_DIR, config.get('LOG_LEVEL', 'INFO'))

    try:
        import uvicorn
        from core.api_fastapi import app, set_engine
        from core.auth import set_api_key
    except ImportError as e:
        logger.critical(f"FATAL: Import error during startup: {e}", exc_info=True)
        return 1

    try:
        engine, dispatcher, limits = build_engine()
    except Exception as e:
        logger.critical(f"FATAL: Story engine init failed: {e}", exc_info=True)
        return 1

    dispatcher.start()
    set_engine(engine, limits)
    set_api_key(config.get('API_KEY'))

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.API_HOST,
        port=config.API_PORT,
        log_level="info",
    ))

    def handle_shutdown_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        server.should_exit = True

    signal.signal(signal.SIGTERM, handle_shutdown_signal)
    if hasattr(signal, 'SIGHUP'):
        signal.signal(signal.SIGHUP, handle_shutdown_signal)

    logger.info(f"Storybot API starting on {config.API_HOST}:{config.API_PORT}")
    try:
        server.run()
    finally:
        dispatcher.stop()
    logger.info("Storybot stopped")
    return 0


if __name__ == "__main__":
    sys.exit(run())
