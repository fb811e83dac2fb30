import asyncio
import logging

from ecr_mirror.config import Args, load_config
from ecr_mirror.orchestrator import RunController, watch
from ecr_mirror.utils import init_logger


async def main(controller: RunController, once: bool) -> None:
    if once:
        logging.warning("Running in manual mode; One-time mirror")
        await controller.tick()
        return
    await watch(controller, controller.config.schedule_minutes)


if __name__ == "__main__":
    args = Args.from_args()
    init_logger(args)
    config = load_config(args)
    if config.args.debug:
        logging.warning("Running in debug mode, found tags will not be mirrored")
    try:
        asyncio.run(main(RunController(config), config.args.once))
    except KeyboardInterrupt:
        pass
