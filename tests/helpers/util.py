import asyncio


async def wait_until(pred, *, timeout: float = 2.0, step: float = 0.005) -> bool:
    """Poll `pred()` on the real loop until it is truthy or `timeout` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if pred():
            return True
        await asyncio.sleep(step)
    return bool(pred())
