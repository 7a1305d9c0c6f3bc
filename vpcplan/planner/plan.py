from dataclasses import dataclass
from typing import Dict, Iterator, List, Tuple

from ..descriptors.models import ResourceDescriptor


@dataclass(frozen=True)
class Plan:
    """Descriptors in an order where every dependency comes first."""
    descriptors: Tuple[ResourceDescriptor, ...]

    def __iter__(self) -> Iterator[ResourceDescriptor]:
        return iter(self.descriptors)

    def __len__(self) -> int:
        return len(self.descriptors)

    def __getitem__(self, index: int) -> ResourceDescriptor:
        return self.descriptors[index]

    @property
    def keys(self) -> List[str]:
        return [d.key for d in self.descriptors]

    def reversed_order(self) -> List[ResourceDescriptor]:
        """Teardown order: dependents before their dependencies."""
        return list(reversed(self.descriptors))

    def to_dict(self) -> Dict[str, object]:
        return {
            "steps": [
                {"step": i + 1, **descriptor.to_dict()}
                for i, descriptor in enumerate(self.descriptors)
            ]
        }
