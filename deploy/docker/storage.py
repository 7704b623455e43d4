import base64
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Union

from capture import PNG_DATA_URI_PREFIX, CaptureResult, OutputKind

logger = logging.getLogger("storage")

EXTENSIONS = {
    OutputKind.SCREENSHOT: "png",
    OutputKind.PDF: "pdf",
    OutputKind.PDF_STREAM: "pdf",
}


def artifact_name(stem: str, extension: str) -> str:
    """Drop any directory part and extension from the stem, then add ours."""
    base = os.path.basename(stem.replace("\\", "/"))
    base = os.path.splitext(base)[0] or "artifact"
    return f"{base}.{extension}"


def decode_artifact(data: Union[str, bytes]) -> bytes:
    if isinstance(data, bytes):
        return data
    if data.startswith(PNG_DATA_URI_PREFIX):
        data = data[len(PNG_DATA_URI_PREFIX):]
    return base64.b64decode(data)


class ArtifactWriter:
    """Persists capture results under fixed per-kind directories."""

    def __init__(self, root: Union[str, Path] = ".", directories: Optional[Dict[OutputKind, str]] = None):
        self.root = Path(root)
        self.directories = directories or {
            OutputKind.SCREENSHOT: "screenshots",
            OutputKind.PDF: "pdfs",
            OutputKind.PDF_STREAM: "pdfs",
        }

    @classmethod
    def from_config(cls, cfg: Dict) -> "ArtifactWriter":
        pdfs = cfg.get("pdfs_dir", "pdfs")
        return cls(cfg.get("root", "."), {
            OutputKind.SCREENSHOT: cfg.get("screenshots_dir", "screenshots"),
            OutputKind.PDF: pdfs,
            OutputKind.PDF_STREAM: pdfs,
        })

    def path_for(self, stem: str, kind: OutputKind) -> Path:
        directory = self.root / self.directories[kind]
        directory.mkdir(parents=True, exist_ok=True)
        return directory / artifact_name(stem, EXTENSIONS[kind])

    def write(self, stem: str, result: CaptureResult) -> str:
        """Write the artifact and return its file name (not the full path)."""
        payload = decode_artifact(result.data)
        if not payload:
            raise ValueError("Refusing to persist an empty artifact")
        target = self.path_for(stem, result.kind)

        # write beside the target and rename, so readers never see a partial file
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.info("Saved %s (%s bytes)", target, len(payload))
        return target.name
