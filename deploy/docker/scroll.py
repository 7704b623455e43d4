"""
Scroll driving and height probing for full-page capture.

A single top-to-bottom pass is not enough on lazy pages: some containers only
render once they scroll into view, and the document keeps growing while we
scroll back up. The upward pass is therefore exposed as a finite stream of
height samples which the caller folds into a running maximum.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

logger = logging.getLogger("scroll")

HEIGHT_JS = "() => document.documentElement.scrollHeight"

# scrolls down by `step` and reports the body height seen at that instant
SCROLL_DOWN_JS = """(step) => {
    window.scrollBy(0, step);
    return document.body.scrollHeight;
}"""

# scrolls up by `step`, returns [offset after the step, document height]
SCROLL_UP_JS = """(step) => {
    window.scrollBy(0, -step);
    return [window.pageYOffset, document.documentElement.scrollHeight];
}"""


@dataclass(frozen=True)
class ScrollSettings:
    down_step: int = 300
    down_interval: float = 0.05
    up_step: int = 50
    up_interval: float = 0.1
    max_steps: int = 2000

    @classmethod
    def from_config(cls, cfg: Optional[Dict]) -> "ScrollSettings":
        cfg = cfg or {}
        return cls(**{k: v for k, v in cfg.items() if k in cls.__dataclass_fields__})


async def measure_height(page) -> int:
    """Scrollable document height right now (single read)."""
    return int(await page.evaluate(HEIGHT_JS))


async def scroll_to_bottom(page, settings: ScrollSettings = ScrollSettings()) -> int:
    """
    Walk down the page in fixed steps until the distance travelled covers the
    body height observed at the latest step. Returns the steps taken.
    """
    travelled = 0
    steps = 0
    while True:
        height = await page.evaluate(SCROLL_DOWN_JS, settings.down_step)
        travelled += settings.down_step
        steps += 1
        if travelled >= height:
            return steps
        if steps >= settings.max_steps:
            logger.warning(
                "Stopped scrolling down after %s steps (%spx of %spx)",
                steps, travelled, height,
            )
            return steps
        await asyncio.sleep(settings.down_interval)


async def scroll_up_heights(page, settings: ScrollSettings = ScrollSettings()) -> AsyncIterator[int]:
    """
    Scroll back to the top, yielding the document height after every step.

    The step that reaches offset 0 is still sampled. Each call starts a fresh
    pass from wherever the page currently is.
    """
    steps = 0
    while True:
        offset, height = await page.evaluate(SCROLL_UP_JS, settings.up_step)
        steps += 1
        yield int(height)
        if offset <= 0 or steps >= settings.max_steps:
            return
        await asyncio.sleep(settings.up_interval)


async def track_max_height(page, initial: int, settings: ScrollSettings = ScrollSettings(),
                           task_id: str = "-") -> int:
    max_height = initial
    async for height in scroll_up_heights(page, settings):
        if height > max_height:
            max_height = height
            logger.info("[%s] New max height: %s", task_id, max_height)
    return max_height
