"""
Health Reminder Bot — Entry Point.

Single entry point: `python main.py` starts the Telegram bot and the
background scheduler.
"""

import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
# python-telegram-bot polls every few seconds; keep its HTTP client quiet
logging.getLogger("httpx").setLevel(logging.WARNING)

from healthbot.bot.telegram_bot import main

if __name__ == "__main__":
    main()
