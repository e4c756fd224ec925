"""
Swarm coordination - best-effort area-claim gossip between mower units.

Each unit periodically broadcasts the heading sector it is working in.
Peers keep a table of the latest claim per sender and bias their random
walk away from sectors claimed by units that outrank them (higher claim
priority, then lower identity). There is no leader and no consensus: lost
or late messages only cost coverage efficiency, never correctness. With
no peers the coordinator answers exactly like a single unit would.

Example:
    swarm = SwarmCoordinator(config.swarm, unit_id=3, transport=UdpBroadcastTransport(port=47800))
    swarm.start()

    # Control loop:
    swarm.broadcast_claim(AreaClaim(sector=swarm.sector_for_heading(heading)))
    offset = swarm.choose_heading(heading, candidate_offsets)
"""

from __future__ import annotations

import json
import logging
import queue
import random
import socket
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from ..core.config import SwarmConfig
from ..core.errors import SwarmMessageMalformed
from ..core.state import OperatorCommand

logger = logging.getLogger(__name__)

# Identity reserved for the operator's commander app
COMMANDER_ID = 0
# Identities available to mower units
UNIT_ID_RANGE = range(1, 250)

WIRE_VERSION = 1
MAX_DATAGRAM = 2048


@dataclass(frozen=True)
class AreaClaim:
    """Claim on a heading sector of the shared work area."""

    sector: int
    priority: int = 0


@dataclass(frozen=True)
class SwarmMessage:
    """Broadcast gossip record.

    Attributes:
        sender: Identity of the sending unit (0 = commander)
        area: Claimed sector, None for pure command messages
        timestamp: Wall-clock send time (seconds)
        session: Random per-process token, detects identity collisions
        behavior: Sender's active behavior name
        command: Operator command (commander messages only)
    """
    sender: int
    area: Optional[AreaClaim]
    timestamp: float
    session: str = ""
    behavior: str = ""
    command: Optional[OperatorCommand] = None

    def to_bytes(self) -> bytes:
        payload = {
            "v": WIRE_VERSION,
            "sender": self.sender,
            "session": self.session,
            "ts": self.timestamp,
            "area": None if self.area is None else {"sector": self.area.sector, "priority": self.area.priority},
            "behavior": self.behavior,
            "command": None if self.command is None else self.command.value,
        }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "SwarmMessage":
        """Decode a datagram.

        Raises:
            SwarmMessageMalformed: If the payload is not a valid message
        """
        try:
            payload = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise SwarmMessageMalformed(f"Undecodable payload: {e}") from e
        if not isinstance(payload, dict):
            raise SwarmMessageMalformed("Payload is not an object")
        if payload.get("v") != WIRE_VERSION:
            raise SwarmMessageMalformed(f"Unsupported version {payload.get('v')!r}")

        try:
            sender = payload["sender"]
            timestamp = payload["ts"]
            area_raw = payload.get("area")
            command_raw = payload.get("command")
            session = payload.get("session", "")
            behavior = payload.get("behavior", "")
        except KeyError as e:
            raise SwarmMessageMalformed(f"Missing field {e}") from e

        if not _is_int(sender) or not 0 <= sender <= 255:
            raise SwarmMessageMalformed(f"Invalid sender {sender!r}")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            raise SwarmMessageMalformed(f"Invalid timestamp {timestamp!r}")
        if not isinstance(session, str) or not isinstance(behavior, str):
            raise SwarmMessageMalformed("Invalid session or behavior")

        area = None
        if area_raw is not None:
            if not isinstance(area_raw, dict):
                raise SwarmMessageMalformed("Invalid area")
            sector = area_raw.get("sector")
            priority = area_raw.get("priority", 0)
            if not _is_int(sector) or sector < 0 or not _is_int(priority):
                raise SwarmMessageMalformed(f"Invalid area {area_raw!r}")
            area = AreaClaim(sector=sector, priority=priority)

        command = None
        if command_raw is not None:
            try:
                command = OperatorCommand(command_raw)
            except ValueError as e:
                raise SwarmMessageMalformed(f"Unknown command {command_raw!r}") from e

        return cls(
            sender=sender,
            area=area,
            timestamp=float(timestamp),
            session=session,
            behavior=behavior,
            command=command,
        )


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# ----- Transports -----


class SwarmTransport:
    """Datagram transport. Delivery is best-effort."""

    def send(self, payload: bytes) -> None:
        raise NotImplementedError

    def receive(self, timeout: float) -> Optional[bytes]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class UdpBroadcastTransport(SwarmTransport):
    """Local-network UDP broadcast."""

    def __init__(self, port: int = 47800, broadcast_address: str = "255.255.255.255"):
        self.broadcast_address = broadcast_address
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        self._sock.bind(("", port))
        # Port 0 binds an ephemeral port
        self.port = self._sock.getsockname()[1]

    def send(self, payload: bytes) -> None:
        self._sock.sendto(payload, (self.broadcast_address, self.port))

    def receive(self, timeout: float) -> Optional[bytes]:
        # A zero timeout puts the socket in non-blocking mode
        self._sock.settimeout(max(timeout, 0.0))
        try:
            data, _addr = self._sock.recvfrom(MAX_DATAGRAM)
        except (socket.timeout, BlockingIOError):
            return None
        return data

    def close(self) -> None:
        self._sock.close()


class LoopbackHub:
    """In-process broadcast domain for simulation and tests."""

    def __init__(self):
        self._members: list["LoopbackTransport"] = []
        self._lock = threading.Lock()

    def join(self, inbox_size: int = 64) -> "LoopbackTransport":
        transport = LoopbackTransport(self, inbox_size)
        with self._lock:
            self._members.append(transport)
        return transport

    def leave(self, transport: "LoopbackTransport") -> None:
        with self._lock:
            if transport in self._members:
                self._members.remove(transport)

    def deliver(self, payload: bytes) -> None:
        with self._lock:
            members = list(self._members)
        for member in members:
            member._inbox_put(payload)


class LoopbackTransport(SwarmTransport):
    """Member of a LoopbackHub. Receives its own broadcasts, like UDP."""

    def __init__(self, hub: LoopbackHub, inbox_size: int = 64):
        self._hub = hub
        self._inbox: queue.Queue[bytes] = queue.Queue(maxsize=inbox_size)

    def send(self, payload: bytes) -> None:
        self._hub.deliver(payload)

    def receive(self, timeout: float) -> Optional[bytes]:
        try:
            if timeout <= 0:
                return self._inbox.get_nowait()
            return self._inbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._hub.leave(self)

    def _inbox_put(self, payload: bytes) -> None:
        try:
            self._inbox.put_nowait(payload)
        except queue.Full:
            pass  # broadcast semantics: a full receiver misses the datagram


class LossyTransport(SwarmTransport):
    """Wraps a transport and drops outgoing datagrams at random."""

    def __init__(self, inner: SwarmTransport, loss_rate: float = 1.0, rng: Optional[random.Random] = None):
        if not 0.0 <= loss_rate <= 1.0:
            raise ValueError("loss_rate must be in [0, 1]")
        self.inner = inner
        self.loss_rate = loss_rate
        self._rng = rng or random.Random()
        self.dropped = 0

    def send(self, payload: bytes) -> None:
        if self.loss_rate >= 1.0 or self._rng.random() < self.loss_rate:
            self.dropped += 1
            return
        self.inner.send(payload)

    def receive(self, timeout: float) -> Optional[bytes]:
        return self.inner.receive(timeout)

    def close(self) -> None:
        self.inner.close()


# ----- Coordinator -----


class SwarmCoordinator:
    """
    Tracks peer area claims and biases heading choices away from them.

    Features:
    - Fire-and-forget claim broadcast through a bounded outbox
    - Peer table keyed by sender, newest claim wins, stale claims ignored
    - Deterministic yield rule: higher priority, then lower identity wins
    - Identity collision detection and re-draw from the free pool
    - Operator commands from the commander identity
    """

    def __init__(
        self,
        config: SwarmConfig,
        unit_id: int,
        transport: Optional[SwarmTransport] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize SwarmCoordinator.

        Args:
            config: Swarm configuration
            unit_id: This unit's identity (1..249)
            transport: Datagram transport; None runs the unit alone
            clock: Wall-clock source used for message timestamps
            rng: Random source for identity re-draws
        """
        if unit_id not in UNIT_ID_RANGE:
            raise ValueError(f"unit_id must be in 1..249, got {unit_id}")
        self.config = config
        self.transport = transport
        self._clock = clock
        self._rng = rng or random.Random()
        self._unit_id = unit_id
        self.session = uuid.uuid4().hex[:8]

        self._peers: dict[int, SwarmMessage] = {}
        self._commands: deque[OperatorCommand] = deque(maxlen=8)
        self._outbox: deque[bytes] = deque(maxlen=config.outbox_size)
        self._lock = threading.Lock()
        self._outbox_ready = threading.Condition(self._lock)
        self._own_claim: Optional[AreaClaim] = None

        self._running = False
        self._threads: list[threading.Thread] = []

        # Statistics
        self._received = 0
        self._malformed = 0
        self._send_errors = 0

    @property
    def unit_id(self) -> int:
        return self._unit_id

    @property
    def own_claim(self) -> Optional[AreaClaim]:
        return self._own_claim

    # ----- Lifecycle -----

    def start(self) -> None:
        """Start background send and receive threads."""
        if self._running or self.transport is None:
            return
        self._running = True
        self._threads = [
            threading.Thread(target=self._send_loop, name="swarm-send", daemon=True),
            threading.Thread(target=self._receive_loop, name="swarm-recv", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Swarm coordinator started as unit {self._unit_id}")

    def stop(self, timeout: float = 1.0) -> None:
        """Stop threads and abandon unsent claims."""
        with self._lock:
            self._running = False
            abandoned = len(self._outbox)
            self._outbox.clear()
            self._outbox_ready.notify_all()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        if self.transport is not None:
            try:
                self.transport.close()
            except OSError as e:
                logger.debug(f"Error closing swarm transport: {e}")
        if abandoned:
            logger.debug(f"Abandoned {abandoned} unsent swarm message(s)")
        logger.info("Swarm coordinator stopped")

    # ----- Outbound -----

    def broadcast_claim(self, area: AreaClaim, behavior: str = "") -> None:
        """Queue a claim broadcast. Never blocks; oldest unsent claim is dropped."""
        self._own_claim = area
        if self.transport is None:
            return
        message = SwarmMessage(
            sender=self._unit_id,
            area=area,
            timestamp=self._clock(),
            session=self.session,
            behavior=behavior,
        )
        with self._lock:
            self._outbox.append(message.to_bytes())
            self._outbox_ready.notify()

    def flush(self) -> int:
        """Send queued claims synchronously (used when threads are not running)."""
        with self._lock:
            pending = list(self._outbox)
            self._outbox.clear()
        for payload in pending:
            self._send(payload)
        return len(pending)

    def _send(self, payload: bytes) -> None:
        try:
            self.transport.send(payload)
        except OSError as e:
            self._send_errors += 1
            logger.debug(f"Swarm send failed: {e}")

    def _send_loop(self) -> None:
        while True:
            with self._lock:
                while self._running and not self._outbox:
                    self._outbox_ready.wait(timeout=0.5)
                if not self._running:
                    return
                payload = self._outbox.popleft()
            self._send(payload)

    # ----- Inbound -----

    def _receive_loop(self) -> None:
        while self._running:
            try:
                data = self.transport.receive(timeout=0.1)
            except OSError as e:
                if self._running:
                    logger.debug(f"Swarm receive failed: {e}")
                time.sleep(0.1)
                continue
            if data is not None:
                self.on_datagram(data)

    def poll(self, max_messages: int = 64) -> int:
        """Drain the transport without blocking (used when threads are not running)."""
        if self.transport is None:
            return 0
        count = 0
        while count < max_messages:
            data = self.transport.receive(timeout=0.0)
            if data is None:
                break
            self.on_datagram(data)
            count += 1
        return count

    def on_datagram(self, data: bytes) -> bool:
        """Decode and apply a datagram. Malformed input is dropped."""
        try:
            message = SwarmMessage.from_bytes(data)
        except SwarmMessageMalformed as e:
            self._malformed += 1
            logger.debug(f"Dropped malformed swarm message: {e}")
            return False
        return self.on_message(message)

    def on_message(self, message: SwarmMessage) -> bool:
        """Apply a peer message to the claim table.

        Returns:
            True if the message updated local state
        """
        now = self._clock()
        if now - message.timestamp > self.config.liveness_window_s:
            return False

        if message.sender == COMMANDER_ID:
            if message.command is not None:
                with self._lock:
                    self._commands.append(message.command)
                logger.info(f"Operator command received: {message.command.value}")
                return True
            return False

        if message.area is not None and message.area.sector >= self.config.num_sectors:
            self._malformed += 1
            logger.debug(f"Dropped claim for unknown sector {message.area.sector}")
            return False

        if message.sender == self._unit_id:
            if message.session == self.session:
                return False  # own broadcast looped back
            self._resolve_collision(now)

        with self._lock:
            existing = self._peers.get(message.sender)
            if existing is not None and existing.timestamp >= message.timestamp:
                return False
            self._peers[message.sender] = message
            self._received += 1
        return True

    def _resolve_collision(self, now: float) -> None:
        """Another unit uses our identity: draw a free one."""
        taken = set(self.live_peers(now))
        pool = [i for i in UNIT_ID_RANGE if i not in taken and i != self._unit_id]
        if not pool:
            logger.error("Identity collision but no free identity left")
            return
        old = self._unit_id
        self._unit_id = self._rng.choice(pool)
        logger.warning(f"Identity collision on {old}, now unit {self._unit_id}")

    def pop_commands(self) -> list[OperatorCommand]:
        """Operator commands received since the last call, oldest first."""
        with self._lock:
            commands = list(self._commands)
            self._commands.clear()
        return commands

    # ----- Policy -----

    def live_peers(self, now: Optional[float] = None) -> dict[int, SwarmMessage]:
        """Latest message per peer, excluding stale ones."""
        now = self._clock() if now is None else now
        with self._lock:
            return {
                sender: msg
                for sender, msg in self._peers.items()
                if now - msg.timestamp <= self.config.liveness_window_s and sender != self._unit_id
            }

    def outranks(self, peer: SwarmMessage, own_priority: Optional[int] = None) -> bool:
        """Whether a peer's claim wins over ours (priority, then lower identity)."""
        if peer.area is None:
            return False
        own = self.config.claim_priority if own_priority is None else own_priority
        if peer.area.priority != own:
            return peer.area.priority > own
        return peer.sender < self._unit_id

    def should_yield(self, area: AreaClaim) -> bool:
        """Whether a live peer that outranks us claims the same sector."""
        return any(
            peer.area is not None and peer.area.sector == area.sector and self.outranks(peer, area.priority)
            for peer in self.live_peers().values()
        )

    def contested_sectors(self, now: Optional[float] = None) -> set[int]:
        """Sectors claimed by live peers that outrank this unit."""
        return {
            peer.area.sector
            for peer in self.live_peers(now).values()
            if peer.area is not None and self.outranks(peer)
        }

    def sector_for_heading(self, heading_deg: float) -> int:
        """Heading sector index (0 = the sector starting at north)."""
        width = 360.0 / self.config.num_sectors
        return int((heading_deg % 360.0) // width) % self.config.num_sectors

    def choose_heading(self, current_heading_deg: float, offsets: list[float]) -> float:
        """Pick the first candidate offset leading out of contested sectors.

        Falls back to the first candidate, i.e. single-unit behavior, when
        there are no peers or every candidate is contested.
        """
        if not offsets:
            raise ValueError("offsets must not be empty")
        contested = self.contested_sectors()
        if not contested:
            return offsets[0]
        for offset in offsets:
            if self.sector_for_heading(current_heading_deg + offset) not in contested:
                return offset
        return offsets[0]

    def get_stats(self) -> dict:
        return {
            "unit_id": self._unit_id,
            "peers": len(self.live_peers()),
            "received": self._received,
            "malformed": self._malformed,
            "send_errors": self._send_errors,
        }
