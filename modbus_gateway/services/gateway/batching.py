"""
Batch Request Planning

Turns "read these points" into a minimal list of read requests.

Points are partitioned by register kind, sorted by address and coalesced
into runs. A run grows while its span stays within the connection's max
read count for that kind (bits or registers). With contiguous-only set, a
run also stops at any address gap; otherwise gaps are bridged by reading
the unused addresses in between.
"""

from dataclasses import dataclass, field

from modbus_gateway.common.config import RegisterKind
from .points import Point


@dataclass
class ReadBatch:
    """One transport read request and the points it covers"""
    kind: RegisterKind
    start: int
    count: int
    points: list[Point] = field(default_factory=list)

    @property
    def end(self) -> int:
        """Last address read (inclusive)"""
        return self.start + self.count - 1

    def slice_for(self, point: Point, raw: list) -> list:
        """The part of a batch response that belongs to point"""
        offset = point.address - self.start
        return raw[offset:offset + point.register_count]

    def __repr__(self) -> str:
        return f"<ReadBatch {self.kind.value} [{self.start}-{self.end}] points={len(self.points)}>"


def plan_single_reads(points: list[Point]) -> list[ReadBatch]:
    """One request per point (batch polling disabled)"""
    return [
        ReadBatch(kind=point.kind, start=point.address, count=point.register_count, points=[point])
        for point in points
    ]


def plan_batches(
    points: list[Point],
    max_bit_count: int,
    max_register_count: int,
    contiguous_only: bool,
) -> list[ReadBatch]:
    """
    Coalesce points into as few read requests as the limits allow.

    Args:
        points: Points to read
        max_bit_count: Max bits per coil/discrete-input request
        max_register_count: Max registers per holding/input-register request
        contiguous_only: Never bridge address gaps

    Returns:
        Read batches grouped by kind, in address order
    """
    batches: list[ReadBatch] = []

    for kind in RegisterKind:
        kind_points = sorted(
            (point for point in points if point.kind == kind),
            key=lambda point: (point.address, point.register_count),
        )
        limit = max_bit_count if kind.is_bit else max_register_count

        current: ReadBatch | None = None
        for point in kind_points:
            if current is not None:
                new_end = max(current.end, point.end_address)
                fits = new_end - current.start + 1 <= limit
                adjacent = point.address <= current.end + 1

                if fits and (adjacent or not contiguous_only):
                    current.points.append(point)
                    current.count = new_end - current.start + 1
                    continue

                batches.append(current)

            # A point wider than the limit still gets a request of its own
            current = ReadBatch(
                kind=kind,
                start=point.address,
                count=point.register_count,
                points=[point],
            )

        if current is not None:
            batches.append(current)

    return batches
