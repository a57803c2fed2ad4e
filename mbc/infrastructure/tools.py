import logging
import shutil
from typing import Dict
from mbc.config.models import ToolsConfig
from mbc.domain.errors import ToolNotFoundError

logger = logging.getLogger(__name__)


def resolve_tool(name: str, configured: str) -> str:
    """Absolute path of an external tool, or ToolNotFoundError."""
    resolved = shutil.which(configured)
    if not resolved:
        raise ToolNotFoundError(name, configured)
    return resolved


def check_tools(tools: ToolsConfig) -> Dict[str, str]:
    """Resolves ffmpeg and ffprobe before any batch can start."""
    resolved = {
        "ffprobe": resolve_tool("ffprobe", tools.ffprobe_path),
        "ffmpeg": resolve_tool("ffmpeg", tools.ffmpeg_path),
    }
    for name, path in resolved.items():
        logger.info(f"Using {name}: {path}")
    return resolved
