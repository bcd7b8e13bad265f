"""Run arq worker. Usage: python -m coursepay.worker.run_worker"""

import asyncio

from arq.worker import Worker

from coursepay.worker.tasks import get_redis_settings, send_purchase_email, shutdown, startup


def build_worker() -> Worker:
    return Worker(
        functions=[send_purchase_email],
        redis_settings=get_redis_settings(),
        on_startup=startup,
        on_shutdown=shutdown,
        max_tries=5,
    )


async def main() -> None:
    worker = build_worker()
    try:
        await worker.async_run()
    finally:
        await worker.close()


if __name__ == "__main__":
    asyncio.run(main())
