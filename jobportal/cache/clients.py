"""
Registry of open client views (tabs/windows) served by the offline cache.

A view is "controlled" by the generation that last claimed it. Claiming
lets a freshly activated generation intercept requests from views that
were opened under an older one, without a reload.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

logger = logging.getLogger("cache.clients")


@dataclass
class ClientView:
    """One open client view."""
    id: str
    url: str
    controller: Optional[str] = None  # Generation name controlling this view


@dataclass
class ClientRegistry:
    """Tracks open views and which generation controls each."""
    _views: Dict[str, ClientView] = field(default_factory=dict)

    def open(self, url: str, client_id: Optional[str] = None) -> ClientView:
        view = ClientView(id=client_id or uuid.uuid4().hex, url=url)
        self._views[view.id] = view
        return view

    def claim(self, generation: str) -> int:
        """
        Make `generation` the controller of every open view.

        Returns:
            Number of views whose controller changed
        """
        changed = 0
        for view in self._views.values():
            if view.controller != generation:
                view.controller = generation
                changed += 1
        logger.info(f"Generation {generation} claimed {changed} client view(s)")
        return changed
