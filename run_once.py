import sys, os
import argparse
import asyncio
import logging
import pathlib

# Ensure we are in the correct directory regardless of how this is called
SCRIPT_DIR = str(pathlib.Path(__file__).parent.absolute())
sys.path.insert(0, SCRIPT_DIR)
os.chdir(SCRIPT_DIR)

from config import Settings
from services import Services

logger = logging.getLogger("automation_service")


async def main(wait_seconds: float) -> int:
    print("Starting one-off resume sweep...")
    services = Services(Settings.from_env())
    try:
        started = await services.engine.recover()
        print(f"Resumed {started} execution(s).")
        if started and wait_seconds > 0:
            # let the resumed executions run until they finish or suspend
            await asyncio.sleep(wait_seconds)
    finally:
        await services.close()
    print("Finished one-off sweep. Closing now.")
    return started


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Resume every non-terminal workflow execution once.")
    parser.add_argument("--wait", type=float, default=30.0,
                        help="Seconds to keep resumed executions running before exiting (default: 30)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
    )
    asyncio.run(main(args.wait))
