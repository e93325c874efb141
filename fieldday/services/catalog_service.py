from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fieldday.constants import APP_NAME, GRADES, SPORT_TYPES
from fieldday.core.resource import SyncedResource
from fieldday.utils import iter_entities

LOGGER = logging.getLogger(APP_NAME)

DEFAULT_TOURNAMENT_SETTINGS = {"hasThirdPlaceMatch": True, "hasRepechage": False}
DEFAULT_ROUND_ROBIN_SETTINGS = {
    "winPoints": 3,
    "drawPoints": 1,
    "losePoints": 0,
    "considerLosePoints": False,
    "rankingMethod": "points",
    "displayRankCount": 3,
}
DEFAULT_LEAGUE_SETTINGS = {"blockCount": 2, "advancingTeams": 1, "hasPlayoff": True, "hasThirdPlaceMatch": False}


def empty_roster() -> Dict[str, Dict[str, List[str]]]:
    return {grade: {} for grade in GRADES}


def default_custom_layout(title: str, stamp: int, size: int = 5) -> List[List[Dict[str, Any]]]:
    """Grid with a header row and header column, the corner holding ``title``."""
    layout = []
    for row in range(size):
        cells = []
        for col in range(size):
            header = row == 0 or col == 0
            if row == 0 and col == 0:
                content = title
            elif row == 0:
                content = f"Column {col}"
            elif col == 0:
                content = f"Row {row}"
            else:
                content = ""
            cells.append(
                {
                    "id": f"cell_{row}_{col}_{stamp}",
                    "rowIndex": row,
                    "colIndex": col,
                    "content": content,
                    "type": "header" if header else "data",
                }
            )
        layout.append(cells)
    return layout


class CatalogService:
    """Event and sport record operations over the two collection resources."""

    def __init__(
        self,
        events: SyncedResource,
        sports: SyncedResource,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.events = events
        self.sports = sports
        self._clock = clock

    # ---- queries ----

    def list_events(self) -> List[Dict[str, Any]]:
        return sorted(
            (event for _, event in iter_entities(self.events.value) if isinstance(event, dict)),
            key=lambda event: str(event.get("date", "")),
        )

    def active_event(self) -> Optional[Dict[str, Any]]:
        return next((event for event in self.list_events() if event.get("isActive")), None)

    def sports_for_event(self, event_id: str) -> List[Dict[str, Any]]:
        return [
            sport
            for _, sport in iter_entities(self.sports.value)
            if isinstance(sport, dict) and sport.get("eventId") == event_id
        ]

    def _event(self, event_id: str) -> Dict[str, Any]:
        event = (self.events.value or {}).get(event_id)
        if not isinstance(event, dict):
            raise KeyError(f"unknown event {event_id}")
        return event

    # ---- events ----

    async def create_event(
        self,
        name: str,
        *,
        date: Optional[str] = None,
        alternative_date: Optional[str] = None,
        description: str = "",
        is_active: bool = False,
        organizers: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[str]:
        if not name.strip():
            raise ValueError("event name is required")
        now = self._clock()
        record: Dict[str, Any] = {
            "name": name.strip(),
            "date": date or now.date().isoformat(),
            "description": description,
            "isActive": is_active,
            "organizers": list(organizers or []),
            "sports": [],
            "createdAt": now.isoformat(),
        }
        if alternative_date:
            record["alternativeDate"] = alternative_date
        new_id = await self.events.append_child(record)
        if new_id is None:
            return None
        LOGGER.info("event_created id=%s", new_id)
        if is_active:
            # the new record may not have been echoed back yet
            updates = self._activation_updates(new_id)
            updates.pop(new_id, None)
            if updates:
                await self.events.merge_update(updates)
        return new_id

    async def set_active_event(self, event_id: str) -> bool:
        """Make ``event_id`` the only active event."""
        if event_id not in (self.events.value or {}):
            return False
        updates = self._activation_updates(event_id)
        if updates:
            await self.events.merge_update(updates)
        return True

    def _activation_updates(self, event_id: str) -> Dict[str, Any]:
        updates = {}
        for eid, event in iter_entities(self.events.value):
            active = eid == event_id
            if isinstance(event, dict) and bool(event.get("isActive")) != active:
                updates[eid] = {**event, "isActive": active}
        return updates

    async def delete_event(self, event_id: str) -> bool:
        return await self.events.remove(event_id)

    # ---- sports ----

    async def create_sport(
        self,
        event_id: str,
        name: str,
        sport_type: str = "tournament",
        *,
        description: str = "",
        rules: str = "",
        organizers: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[str]:
        if sport_type not in SPORT_TYPES:
            raise ValueError(f"unknown sport type {sport_type!r}")
        event = self._event(event_id)
        now = self._clock()
        record: Dict[str, Any] = {
            "name": name.strip(),
            "eventId": event_id,
            "type": sport_type,
            "description": description,
            "rules": rules,
            "manual": "",
            "organizers": list(organizers or []),
            "teams": [],
            "matches": [],
            "roster": empty_roster(),
        }
        if sport_type == "tournament":
            record["tournamentSettings"] = dict(DEFAULT_TOURNAMENT_SETTINGS)
        elif sport_type == "roundRobin":
            record["roundRobinSettings"] = dict(DEFAULT_ROUND_ROBIN_SETTINGS)
        elif sport_type == "league":
            record["leagueSettings"] = dict(DEFAULT_LEAGUE_SETTINGS)
        elif sport_type == "custom":
            record["customLayout"] = default_custom_layout(record["name"], int(now.timestamp() * 1000))

        new_id = await self.sports.append_child(record)
        if new_id is None:
            return None
        linked = list(event.get("sports") or [])
        if new_id not in linked:
            linked.append(new_id)
            await self.events.merge_update({event_id: {**event, "sports": linked}})
        LOGGER.info("sport_created id=%s event=%s type=%s", new_id, event_id, sport_type)
        return new_id

    async def delete_sport(self, sport_id: str) -> bool:
        sport = (self.sports.value or {}).get(sport_id)
        await self.sports.remove(sport_id)
        event_id = sport.get("eventId") if isinstance(sport, dict) else None
        event = (self.events.value or {}).get(event_id) if event_id else None
        if isinstance(event, dict) and sport_id in (event.get("sports") or []):
            linked = [sid for sid in event.get("sports") or [] if sid != sport_id]
            await self.events.merge_update({event_id: {**event, "sports": linked}})
        return True
