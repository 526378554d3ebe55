import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from media_service.conversion import DeliveryMode

DEFAULT_CONVERTER_URL = "https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp"


@dataclass(frozen=True)
class ServiceConfig:
    converter_path: Path
    converter_url: str
    converter_min_bytes: int
    converter_max_redirects: int
    download_timeout_sec: float
    delivery_mode: DeliveryMode
    work_dir: Path
    chunk_size: int
    stderr_lines: int
    kill_timeout_sec: float
    log_level: str

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Read configuration from environment variables.

        Invalid values raise ValueError so a misconfigured deployment fails at
        startup rather than on the first request.
        """
        tmp = Path(tempfile.gettempdir())
        cfg = cls(
            converter_path=Path(os.getenv("CONVERTER_PATH", str(tmp / "yt-dlp"))),
            converter_url=os.getenv("CONVERTER_URL", DEFAULT_CONVERTER_URL),
            converter_min_bytes=int(os.getenv("CONVERTER_MIN_BYTES", "100000")),
            converter_max_redirects=int(os.getenv("CONVERTER_MAX_REDIRECTS", "5")),
            download_timeout_sec=float(os.getenv("CONVERTER_DOWNLOAD_TIMEOUT_SEC", "60")),
            delivery_mode=DeliveryMode(os.getenv("DELIVERY_MODE", "buffered").strip().lower()),
            work_dir=Path(os.getenv("WORK_DIR", str(tmp / "media_service"))).resolve(),
            chunk_size=int(os.getenv("STREAM_CHUNK_KB", "256")) * 1024,
            stderr_lines=int(os.getenv("STDERR_TAIL_LINES", "20")),
            kill_timeout_sec=float(os.getenv("KILL_TIMEOUT_SEC", "5")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
        if cfg.converter_min_bytes < 1:
            raise ValueError("CONVERTER_MIN_BYTES must be positive")
        if cfg.converter_max_redirects < 0:
            raise ValueError("CONVERTER_MAX_REDIRECTS must not be negative")
        if cfg.chunk_size <= 0 or cfg.stderr_lines <= 0:
            raise ValueError("STREAM_CHUNK_KB and STDERR_TAIL_LINES must be positive")
        return cfg
