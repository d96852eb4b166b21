import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from codec import Decoder, DecoderError, DecoderSessionHandle
from nal_unit import EncodedUnit, UnitKind
from stats_manager import StatsManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigurationSet:
    primary: Optional[bytes] = None
    secondary: Optional[bytes] = None

    @property
    def complete(self) -> bool:
        return self.primary is not None and self.secondary is not None

    def with_secondary(self, data: bytes) -> 'ConfigurationSet':
        if self.complete:
            raise ValueError("ConfigurationSet is immutable once complete")
        return dataclasses.replace(self, secondary=data)


class BootstrapState(Enum):
    AWAITING_PRIMARY = 1
    AWAITING_SECONDARY = 2
    READY = 3


class BootstrapStateMachine:
    """
    Gates frame units until a complete configuration pair has produced a
    decoder session.

    AWAITING_PRIMARY -> AWAITING_SECONDARY -> READY. Configuration that
    differs from the active set (by content) while READY invalidates the
    session and starts over with the new units; identical repeats are
    ignored.

    Not thread-safe. The owner must serialize admit()/reset() with any
    decode call that uses `session`.
    """

    def __init__(self, decoder: Decoder):
        self.decoder = decoder
        self.state = BootstrapState.AWAITING_PRIMARY
        self.config = ConfigurationSet()
        self.session: Optional[DecoderSessionHandle] = None
        # Latest primary received, re-admitted when only the secondary changes
        self._last_primary: Optional[bytes] = None

    @property
    def ready(self) -> bool:
        return self.state is BootstrapState.READY

    def admit(self, unit: EncodedUnit) -> Optional[EncodedUnit]:
        """
        Consumes one reassembled unit.
        Returns the unit if it is a frame that can be decoded now, else None.
        """
        kind = unit.kind
        if kind is UnitKind.FRAME:
            if self.state is BootstrapState.READY:
                return unit
            StatsManager().incr("dropped_not_ready")
            logger.debug(f"Dropped {unit!r} while {self.state.name}")
            return None

        if kind is UnitKind.CONFIG_PRIMARY:
            self._on_primary(unit.data)
        else:
            self._on_secondary(unit.data)
        return None

    def reset(self):
        """Back to AWAITING_PRIMARY, releasing any session."""
        self._invalidate()
        self.config = ConfigurationSet()
        self._last_primary = None
        self._set_state(BootstrapState.AWAITING_PRIMARY)

    def _on_primary(self, data: bytes):
        self._last_primary = data

        if self.state is BootstrapState.READY:
            if data == self.config.primary:
                StatsManager().incr("config_repeated")
                return
            self._renegotiate("primary configuration changed")

        if self.state is BootstrapState.AWAITING_SECONDARY:
            logger.debug("Replacing pending primary configuration")

        self.config = ConfigurationSet(primary=data)
        self._set_state(BootstrapState.AWAITING_SECONDARY)

    def _on_secondary(self, data: bytes):
        if self.state is BootstrapState.READY:
            if data == self.config.secondary:
                StatsManager().incr("config_repeated")
                return
            self._renegotiate("secondary configuration changed")
            self.config = ConfigurationSet(primary=self._last_primary)
            self._set_state(BootstrapState.AWAITING_SECONDARY)

        if self.state is BootstrapState.AWAITING_PRIMARY:
            StatsManager().incr("config_out_of_order")
            logger.warning("Secondary configuration before any primary, dropped")
            return

        self.config = self.config.with_secondary(data)
        self._construct()

    def _construct(self):
        try:
            self.session = self.decoder.create(self.config)
        except DecoderError as e:
            # Fatal for this attempt only; the next pair re-arms bootstrap.
            StatsManager().incr("config_rejected")
            logger.error(f"Decoder rejected configuration: {e}")
            self.config = ConfigurationSet()
            self._set_state(BootstrapState.AWAITING_PRIMARY)
            return

        StatsManager().incr("sessions_created")
        self._set_state(BootstrapState.READY)

    def _renegotiate(self, reason: str):
        StatsManager().incr("renegotiations")
        logger.info(f"Renegotiating decoder session: {reason}")
        self._invalidate()
        self.config = ConfigurationSet()
        self._set_state(BootstrapState.AWAITING_PRIMARY)

    def _invalidate(self):
        if self.session is None:
            return
        session, self.session = self.session, None
        StatsManager().incr("sessions_invalidated")
        try:
            self.decoder.invalidate(session)
        except DecoderError as e:
            logger.error(f"Decoder failed to invalidate session: {e}")

    def _set_state(self, state: BootstrapState):
        if state is not self.state:
            logger.debug(f"Bootstrap {self.state.name} -> {state.name}")
        self.state = state
        StatsManager().update_bootstrap_state(state.name)
