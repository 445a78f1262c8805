"""
Replay Interface - render a recorded event prefix.

A replayer receives the events of one tab, from the start of the run up to
a resolved frame, and rebuilds the page as it was at that frame.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

Viewport = Dict[str, int]


class IReplayer(ABC):
    """Abstract interface for the replay capability."""

    @abstractmethod
    async def render_screenshot(
        self,
        events: List[Dict[str, Any]],
        out_path: Union[str, Path],
        viewport: Optional[Viewport] = None,
    ) -> Path:
        """
        Replay ``events`` and save a PNG of the final state.

        Returns:
            Path of the written image
        """
        ...

    @abstractmethod
    async def render_html(
        self,
        events: List[Dict[str, Any]],
        viewport: Optional[Viewport] = None,
    ) -> str:
        """Replay ``events`` and return the reconstructed document's HTML."""
        ...

    async def close(self) -> None:
        """Release replay resources."""
        return None

    async def __aenter__(self) -> "IReplayer":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
