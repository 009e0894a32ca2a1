"""
Vigil — Entry Point.

Single entry point: `python main.py` starts the attendance and reminder service.
"""

import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from vigil.bot.telegram_bot import main

if __name__ == "__main__":
    main()
