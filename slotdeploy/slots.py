"""
Slot identities and the live pointer.

Two fixed slots, each with a fixed port and a fixed working-directory alias
(``<BASE_DIR>/slots/a`` and ``<BASE_DIR>/slots/b``). The live pointer is the
``<BASE_DIR>/current`` symlink naming one of the two aliases; it is the only
record of which slot serves production traffic.
"""

import enum
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class Slot(enum.Enum):
    A = "a"
    B = "b"

    @property
    def other(self) -> "Slot":
        return Slot.B if self is Slot.A else Slot.A

    def __str__(self) -> str:
        return self.name


def slot_dir(slots_dir: Path, slot: Slot) -> Path:
    return slots_dir / slot.value


def _normalize(link: Path, target: str) -> str:
    p = Path(target)
    if not p.is_absolute():
        p = link.parent / p
    return os.path.normpath(str(p))


class LivePointer:
    def __init__(self, path: Path, slots_dir: Path):
        self.path = Path(path)
        self.slots_dir = Path(slots_dir)

    def raw(self) -> bytes | None:
        """Link target exactly as stored, or None when there is no link."""
        try:
            return os.readlink(os.fsencode(self.path))
        except (FileNotFoundError, OSError):
            return None

    def read(self) -> Slot | None:
        """Slot the pointer names. Absent, dangling or foreign targets give None."""
        raw = self.raw()
        if raw is None:
            return None
        target = _normalize(self.path, os.fsdecode(raw))
        for slot in Slot:
            if target == os.path.normpath(str(slot_dir(self.slots_dir, slot))):
                return slot
        logger.warning(f"Live pointer {self.path} names unknown target {os.fsdecode(raw)}")
        return None

    def point_to(self, slot: Slot) -> None:
        """Atomically replace the pointer so observers see old or new, never neither."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp-{os.getpid()}")
        if tmp.is_symlink() or tmp.exists():
            tmp.unlink()
        os.symlink(str(slot_dir(self.slots_dir, slot)), tmp)
        os.replace(tmp, self.path)
        logger.debug(f"  {self.path} -> {slot_dir(self.slots_dir, slot)}")


@dataclass(frozen=True)
class SlotAssignment:
    current: Slot
    target: Slot
    current_port: int
    target_port: int
    pointer_present: bool = True


class SlotResolver:
    """Decides which slot is live and which one receives the next release."""

    def __init__(self, pointer: LivePointer, ports: dict[Slot, int]):
        self.pointer = pointer
        self.ports = ports

    def resolve(self) -> SlotAssignment:
        # Read fresh on every call; another operator may have switched slots.
        live = self.pointer.read()
        current = Slot.B if live is Slot.B else Slot.A
        target = current.other
        return SlotAssignment(
            current=current,
            target=target,
            current_port=self.ports[current],
            target_port=self.ports[target],
            pointer_present=live is not None,
        )
