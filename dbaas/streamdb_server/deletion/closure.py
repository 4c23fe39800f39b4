"""
Tree closure over the flat parent-pointer stream list.

The caller materializes every stream of the tenant once; TreeClosure indexes
them by parent and answers "this stream plus all of its descendants".

Invariants:
    - The closure starts with the requested stream (pre-order: a parent is
      always listed before its descendants)
    - Siblings keep the order of the input list
    - A revisited id means the stored tree has a cycle: InvalidStateError
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

from ..errors import InvalidStateError, NotFoundError
from ..store.stream_store import Stream


class TreeClosure:
    """Index of a tenant's stream forest.

    Example:
        >>> tree = TreeClosure(await streams.find_streams("t1"))
        >>> tree.closure_of("work")
        ['work', 'work-sub', 'work-sub-sub']
    """

    def __init__(self, streams: Iterable[Stream]) -> None:
        self._parents: dict[str, str | None] = {}
        self._children: dict[str | None, list[str]] = defaultdict(list)
        for stream in streams:
            self._parents[stream.id] = stream.parent_id
            self._children[stream.parent_id].append(stream.id)

    def __contains__(self, stream_id: object) -> bool:
        return stream_id in self._parents

    def __len__(self) -> int:
        return len(self._parents)

    def parent_of(self, stream_id: str) -> str | None:
        """Parent id of a stream (None for roots).

        Raises:
            NotFoundError: If the stream is not in the tree
        """
        if stream_id not in self._parents:
            raise NotFoundError("stream", stream_id)
        return self._parents[stream_id]

    def children_of(self, stream_id: str) -> list[str]:
        return list(self._children.get(stream_id, ()))

    def closure_of(self, stream_id: str) -> list[str]:
        """The stream and all its descendants, depth-first, parents first.

        Raises:
            NotFoundError: If the stream is not in the tree
            InvalidStateError: If a cycle is reachable from the stream
        """
        if stream_id not in self._parents:
            raise NotFoundError("stream", stream_id)

        closure: list[str] = []
        visited: set[str] = set()
        stack = [stream_id]
        while stack:
            current = stack.pop()
            if current in visited:
                raise InvalidStateError(
                    f"Cycle detected in stream tree at '{current}'",
                    stream_id=stream_id,
                    cycle_at=current,
                )
            visited.add(current)
            closure.append(current)
            stack.extend(reversed(self._children.get(current, ())))
        return closure
