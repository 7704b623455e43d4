from dataclasses import dataclass, replace
from typing import Dict, Optional

from errors import DeviceNotFound

DEFAULT_DEVICE = "iPad Pro"


@dataclass(frozen=True)
class Viewport:
    width: int
    height: int
    device_scale_factor: float = 1.0
    is_mobile: bool = False
    has_touch: bool = False
    is_landscape: bool = False

    def size(self) -> Dict[str, int]:
        return {"width": self.width, "height": self.height}


@dataclass(frozen=True)
class DeviceProfile:
    """Named user agent + viewport geometry used to emulate a device class."""
    name: str
    user_agent: str
    viewport: Viewport

    def viewport_for(self, width_override: Optional[int] = None) -> Viewport:
        """Viewport of this device; an explicit width always wins."""
        if width_override:
            return replace(self.viewport, width=int(width_override))
        return self.viewport

    def context_options(self, width_override: Optional[int] = None) -> Dict:
        """Keyword arguments for ``Browser.new_context``."""
        viewport = self.viewport_for(width_override)
        return {
            "user_agent": self.user_agent,
            "viewport": viewport.size(),
            "device_scale_factor": viewport.device_scale_factor,
            "is_mobile": viewport.is_mobile,
            "has_touch": viewport.has_touch,
        }

    def describe(self) -> Dict:
        return {
            "name": self.name,
            "userAgent": self.user_agent,
            "width": self.viewport.width,
            "height": self.viewport.height,
            "deviceScaleFactor": self.viewport.device_scale_factor,
            "isMobile": self.viewport.is_mobile,
        }


DEVICES: Dict[str, DeviceProfile] = {
    profile.name: profile
    for profile in (
        DeviceProfile(
            name="iPhone X",
            user_agent=(
                "Mozilla/5.0 (iPhone; CPU iPhone OS 11_0 like Mac OS X) "
                "AppleWebKit/604.1.38 (KHTML, like Gecko) Version/11.0 "
                "Mobile/15A372 Safari/604.1"
            ),
            viewport=Viewport(375, 812, 3, is_mobile=True, has_touch=True),
        ),
        DeviceProfile(
            name="Pixel 2",
            user_agent=(
                "Mozilla/5.0 (Linux; Android 8.0; Pixel 2 Build/OPD3.170816.012) "
                "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/75.0.3765.0 "
                "Mobile Safari/537.36"
            ),
            viewport=Viewport(411, 731, 2.625, is_mobile=True, has_touch=True),
        ),
        DeviceProfile(
            name="iPad Pro",
            user_agent=(
                "Mozilla/5.0 (iPad; CPU OS 11_0 like Mac OS X) "
                "AppleWebKit/604.1.34 (KHTML, like Gecko) Version/11.0 "
                "Mobile/15A5341f Safari/604.1"
            ),
            viewport=Viewport(1024, 1366, 2, is_mobile=True, has_touch=True),
        ),
    )
}


def get_device(name: Optional[str]) -> DeviceProfile:
    """Look up a registered profile; ``None`` selects the default device."""
    profile = DEVICES.get(DEFAULT_DEVICE if name is None else name)
    if profile is None:
        raise DeviceNotFound(
            f'Device "{name}" not found. Available devices: {", ".join(DEVICES)}'
        )
    return profile
