import logging
import os

from loguru import logger

# Intercept the configuration pipeline at the root of test discovery.
# This strictly isolates the physical database, ensuring the module-level engine
# and any un-overridden sessions operate exclusively in ephemeral memory.
os.environ["SQLITE_DB_PATH"] = ":memory:"

# The minimum bcrypt work factor keeps sign-up and sign-in tests fast
os.environ["BCRYPT_ROUNDS"] = "4"

# Globally mute application logs during testing to prevent terminal noise
# from unhappy-path testing (401s, 403s, validation errors, etc.)
logger.disable("src")

logging.getLogger("asyncio").setLevel(logging.ERROR)
