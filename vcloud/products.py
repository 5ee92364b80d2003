"""Compute shapes (CPU/RAM combinations) offered to callers."""

from typing import Iterable, List, Optional

from config.settings import ProductSettings, get_settings
from vcloud.models import ComputeShape


def shape_name(cpu_count: int, ram_mb: int) -> str:
    return f"{cpu_count} CPU, {ram_mb}M RAM"


def make_shape(ram_mb: int, cpu_count: int, disk_gb: int = 4) -> ComputeShape:
    return ComputeShape(
        product_id=f"{ram_mb}:{cpu_count}",
        name=shape_name(cpu_count, ram_mb),
        cpu_count=cpu_count,
        ram_mb=ram_mb,
        disk_gb=disk_gb,
    )


class ComputeShapeCatalog:
    """
    Immutable list of shapes, built once and injected into the orchestrator.

    Product ids have the form ``"<ram_mb>:<cpu_count>"``.
    """

    def __init__(self, shapes: Iterable[ComputeShape]):
        self._shapes = tuple(shapes)
        self._by_id = {shape.product_id: shape for shape in self._shapes}

    @classmethod
    def from_settings(cls, settings: Optional[ProductSettings] = None) -> "ComputeShapeCatalog":
        settings = settings or get_settings().products
        return cls(
            make_shape(ram, cpu, settings.disk_gb)
            for ram in settings.ram_sizes_mb
            for cpu in settings.cpu_counts
        )

    def list(self) -> List[ComputeShape]:
        return list(self._shapes)

    def get(self, product_id: str) -> Optional[ComputeShape]:
        return self._by_id.get(product_id)

    def __len__(self) -> int:
        return len(self._shapes)
