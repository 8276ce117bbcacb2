from typing import Hashable

# Reserved for "no data" in lookups; never handed out by PointerIndex.
NO_DATA_POINTER = 0


class PointerIndex:
    """
    Assigns dense surrogate pointers to distinct source records.

    Many networks share one record in the MMDB data section, so the record's
    offset identifies the payload. The first offset seen gets pointer 1, the
    next new one pointer 2, and so on; an offset keeps its pointer for the
    whole run.
    """

    def __init__(self) -> None:
        self._pointers: dict[Hashable, int] = {}
        self._next_pointer = NO_DATA_POINTER + 1

    def resolve(self, offset: Hashable) -> tuple[int, bool]:
        """Return (pointer, is_new) for offset, assigning a pointer on first sight."""
        pointer = self._pointers.get(offset)
        if pointer is not None:
            return pointer, False

        pointer = self._next_pointer
        self._next_pointer += 1
        self._pointers[offset] = pointer
        return pointer, True

    def __len__(self) -> int:
        return len(self._pointers)

    def __contains__(self, offset: object) -> bool:
        return offset in self._pointers
