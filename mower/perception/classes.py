"""Detection class taxonomy and per-class policy table.

Behavior that depends on the detected class (which monitor mode reacts to
it, whether it is notified, the detector confidence it needs) is looked up
in ``CLASS_POLICIES`` rather than encoded in class hierarchies.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..core.config import OperatingMode


class ObjectClass(Enum):
    """Labels produced by the external detector."""
    PYLON = "pylon"
    PERSON = "person"
    MOWER = "mower"  # Another unit of the swarm
    BEAR = "bear"
    DEER = "deer"
    MONKEY = "monkey"
    BOAR = "boar"
    BADGER = "badger"
    CAT = "cat"
    CIVET = "civet"
    DOG = "dog"
    FOX = "fox"
    HARE = "hare"
    MICE = "mice"
    RACCOON = "raccoon"
    SQUIRREL = "squirrel"

    @classmethod
    def parse(cls, label: str) -> Optional["ObjectClass"]:
        """Look up a detector label, None if unknown."""
        try:
            return cls(label.strip().lower())
        except ValueError:
            return None

    @property
    def policy(self) -> "ClassPolicy":
        return CLASS_POLICIES[self]

    @property
    def is_animal(self) -> bool:
        return self in ANIMAL_CLASSES


@dataclass(frozen=True)
class ClassPolicy:
    """How the core treats a detection class.

    Attributes:
        monitor_mode: Monitor mode that reports this class (None = never)
        notify: Whether a sighting produces an outbound notification
        min_confidence: Detections below this score are discarded
        height_m: Physical height prior used for monocular ranging
    """
    monitor_mode: Optional[OperatingMode]
    notify: bool
    min_confidence: float
    height_m: float


ANIMAL_CLASSES = frozenset({
    ObjectClass.BEAR,
    ObjectClass.DEER,
    ObjectClass.MONKEY,
    ObjectClass.BOAR,
    ObjectClass.BADGER,
    ObjectClass.CAT,
    ObjectClass.CIVET,
    ObjectClass.DOG,
    ObjectClass.FOX,
    ObjectClass.HARE,
    ObjectClass.MICE,
    ObjectClass.RACCOON,
    ObjectClass.SQUIRREL,
})

# Approximate standing height per animal (meters)
_ANIMAL_HEIGHTS: dict[ObjectClass, float] = {
    ObjectClass.BEAR: 1.0,
    ObjectClass.DEER: 1.0,
    ObjectClass.MONKEY: 0.5,
    ObjectClass.BOAR: 0.7,
    ObjectClass.BADGER: 0.3,
    ObjectClass.CAT: 0.25,
    ObjectClass.CIVET: 0.25,
    ObjectClass.DOG: 0.5,
    ObjectClass.FOX: 0.4,
    ObjectClass.HARE: 0.25,
    ObjectClass.MICE: 0.05,
    ObjectClass.RACCOON: 0.3,
    ObjectClass.SQUIRREL: 0.15,
}

CLASS_POLICIES: dict[ObjectClass, ClassPolicy] = {
    ObjectClass.PYLON: ClassPolicy(monitor_mode=None, notify=False, min_confidence=0.0, height_m=0.32),
    ObjectClass.PERSON: ClassPolicy(
        monitor_mode=OperatingMode.MONITOR_PERSON, notify=True, min_confidence=0.7, height_m=1.7
    ),
    ObjectClass.MOWER: ClassPolicy(monitor_mode=None, notify=False, min_confidence=0.5, height_m=0.25),
    **{
        cls: ClassPolicy(
            monitor_mode=OperatingMode.MONITOR_ANIMAL, notify=True, min_confidence=0.0, height_m=h
        )
        for cls, h in _ANIMAL_HEIGHTS.items()
    },
}


def classes_for_mode(mode: OperatingMode) -> frozenset[ObjectClass]:
    """Classes a monitor mode reports on."""
    return frozenset(cls for cls, p in CLASS_POLICIES.items() if p.monitor_mode == mode)
