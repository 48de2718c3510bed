import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Union

from opl_opcodes import PRECEDENCE

log = logging.getLogger(__name__)

UNDERFLOW_TEXT = 'BAD_STACK_UNDERFLOW'


@dataclass
class StackEntry:
    text: str
    prec: int = PRECEDENCE['ATOM']
    is_error: bool = False


class ExpressionStack:
    """LIFO of expression fragments built while walking QCode.

    Popping an empty stack yields an error entry whose text ends up in the
    generated source instead of raising.
    """

    def __init__(self):
        self._items: List[StackEntry] = []

    def push(self, item: Union[StackEntry, str, int, float]) -> None:
        if not isinstance(item, StackEntry):
            item = StackEntry(str(item), PRECEDENCE['ATOM'])
        self._items.append(item)

    def pop(self) -> StackEntry:
        if not self._items:
            log.debug('expression stack underflow')
            return StackEntry(UNDERFLOW_TEXT, 0, True)
        return self._items.pop()

    def peek(self) -> Optional[StackEntry]:
        if not self._items:
            return None
        return self._items[-1]

    def clear(self) -> None:
        self._items.clear()

    def dump(self) -> str:
        if not self._items:
            return '(empty)'
        return ', '.join(e.text for e in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[StackEntry]:
        return iter(self._items)
