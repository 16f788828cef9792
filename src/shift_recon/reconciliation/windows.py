"""Construction of per-platform query windows from operator work sessions."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Union

from pydantic import ValidationError

from .exceptions import ConfigurationParseError, report_invariant_violation
from .models import (
    CabinetType,
    CabinetWindowConfig,
    Window,
    WindowSet,
    WorkSession,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_CLOCK_SKEW = timedelta(hours=3)


def shift_window(window: Window, delta: timedelta) -> Window:
    """Return a copy of the window with both bounds moved by delta."""
    return window.model_copy(update={
        "start_time": window.start_time + delta,
        "end_time": window.end_time + delta,
    })


class WindowBuilder:
    """Turns work sessions into idex and bybit query windows.

    idex windows are emitted verbatim. bybit windows are shifted backward by
    the clock skew so they are expressed in bybit's own clock.
    """

    def __init__(self, clock_skew: timedelta = DEFAULT_CLOCK_SKEW):
        if clock_skew < timedelta(0):
            raise ValueError("clock_skew must not be negative")
        self.clock_skew = clock_skew

    def _session_bounds(
        self,
        session: WorkSession,
        now: datetime,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
    ) -> Optional[tuple]:
        start = session.start_time
        end = session.end_time if session.end_time is not None else now

        if session.is_active and end < start:
            logger.warning(
                f"Active session on cabinet {session.cabinet_id} starts after query time "
                f"{now.isoformat()}; skipping"
            )
            return None

        if period_start is not None and period_start > start:
            start = period_start
        if period_end is not None and period_end < end:
            end = period_end

        if start > end:
            logger.debug(f"Session on cabinet {session.cabinet_id} lies outside the period")
            return None
        return start, end

    def build(
        self,
        sessions: Iterable[WorkSession],
        now: Optional[datetime] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> WindowSet:
        """Build query windows for a set of work sessions.

        Args:
            sessions: Work sessions to translate.
            now: Query time used as the upper bound of active sessions.
            period_start: Optional lower clip for every window.
            period_end: Optional upper clip for every window.

        Returns:
            WindowSet with one window per session that intersects the period.
        """
        now = now or utcnow()
        ordered = sorted(
            sessions,
            key=lambda s: (s.start_time, s.cabinet_type.value, s.cabinet_id, s.end_time or now),
        )

        idex: List[Window] = []
        bybit: List[Window] = []

        for session in ordered:
            bounds = self._session_bounds(session, now, period_start, period_end)
            if bounds is None:
                continue
            start, end = bounds

            if session.cabinet_type == CabinetType.IDEX:
                idex.append(self._make_window(session, start, end))
            else:
                bybit.append(self._make_window(
                    session,
                    start - self.clock_skew,
                    end - self.clock_skew,
                ))

        logger.info(f"Built {len(idex)} idex and {len(bybit)} bybit windows")
        return WindowSet(idex=idex, bybit=bybit)

    def _make_window(self, session: WorkSession, start: datetime, end: datetime) -> Window:
        if start > end:
            report_invariant_violation(
                f"negative window for cabinet {session.cabinet_id}: "
                f"{start.isoformat()} > {end.isoformat()}"
            )
        return Window(
            cabinet_id=session.cabinet_id,
            cabinet_type=session.cabinet_type,
            start_time=start,
            end_time=end,
            operator_id=session.operator_id,
        )

    @staticmethod
    def _load_entries(raw: Union[str, bytes, List[Any], None]) -> List[Any]:
        if raw is None or raw == "" or raw == b"":
            return []

        if isinstance(raw, (str, bytes)):
            try:
                data = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ConfigurationParseError(f"cabinet windows are not valid JSON: {e}") from e
        else:
            data = raw

        if data is None:
            return []
        if not isinstance(data, list):
            raise ConfigurationParseError(
                f"cabinet windows must be a JSON array, got {type(data).__name__}"
            )
        return data

    def parse_config(self, raw: Union[str, bytes, List[Any], None]) -> List[CabinetWindowConfig]:
        """Validate a serialized cabinet window configuration.

        Args:
            raw: JSON text, or an already decoded list of entries.

        Returns:
            The valid entries. Invalid entries are logged and dropped.

        Raises:
            ConfigurationParseError: If the payload is not a JSON array.
        """
        configs = []
        for index, entry in enumerate(self._load_entries(raw)):
            try:
                configs.append(CabinetWindowConfig.model_validate(entry))
            except ValidationError as e:
                logger.warning(
                    f"Rejected cabinet window entry #{index}: "
                    f"{e.error_count()} validation error(s): {e.errors()[0]['msg']}"
                )
        return configs

    def _representable(self, config: CabinetWindowConfig) -> bool:
        try:
            config.start_date - self.clock_skew
            config.end_date + self.clock_skew
        except OverflowError:
            logger.warning(
                f"Rejected cabinet window for cabinet {config.cabinet_id}: bounds cannot be shifted by "
                f"{self.clock_skew} without leaving the supported date range"
            )
            return False
        return True

    def parse_windows(
        self,
        raw: Union[str, bytes, List[Any], None],
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> WindowSet:
        """Parse a cabinet window configuration into query windows.

        Never raises on bad input: a malformed payload yields an empty
        WindowSet and a logged diagnostic.

        Args:
            raw: JSON array of {cabinetId, cabinetType, startDate, endDate}.
            period_start: Optional lower clip for every window.
            period_end: Optional upper clip for every window.

        Returns:
            WindowSet built from the valid entries.
        """
        try:
            entries = self._load_entries(raw)
        except ConfigurationParseError as e:
            logger.error(f"Failed to parse cabinet windows: {e}")
            return WindowSet()

        configs = [
            c for c in self.parse_config(entries) if self._representable(c)
        ]
        rejected = len(entries) - len(configs)
        built = self.build(
            (c.to_work_session() for c in configs),
            period_start=period_start,
            period_end=period_end,
        )
        return WindowSet(idex=built.idex, bybit=built.bybit, rejected_entries=rejected)
