from typing import Any, Callable, Generic, List, Tuple, TypeVar

T = TypeVar("T")
K = TypeVar("K")
V = TypeVar("V")


class RingBuffer(Generic[T]):
    """Fixed-capacity queue that overwrites its oldest value once full."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._items: List[Any] = [None] * capacity
        self._head = 0  # index of oldest
        self._size = 0

    def push(self, value: T) -> None:
        idx = (self._head + self._size) % self.capacity
        self._items[idx] = value
        if self._size < self.capacity:
            self._size += 1
        else:
            self._head = (self._head + 1) % self.capacity

    def to_list(self) -> List[T]:
        return [self._items[(self._head + i) % self.capacity] for i in range(self._size)]

    def last(self) -> T | None:
        if self._size == 0:
            return None
        return self._items[(self._head + self._size - 1) % self.capacity]

    def __len__(self) -> int:
        return self._size


class Stack(Generic[T]):
    def __init__(self):
        self._items: List[T] = []

    def push(self, value: T) -> None:
        self._items.append(value)

    def pop(self) -> T | None:
        return self._items.pop() if self._items else None

    def peek(self) -> T | None:
        return self._items[-1] if self._items else None

    def is_empty(self) -> bool:
        return not self._items

    def __len__(self) -> int:
        return len(self._items)


class PriorityQueue(Generic[T]):
    """
    Binary min-heap ordered by `key(item)`.
    Smaller keys come out first.
    """

    def __init__(self, key: Callable[[T], Any]):
        self.key = key
        self._heap: List[Tuple[Any, T]] = []

    def is_empty(self) -> bool:
        return not self._heap

    def __len__(self) -> int:
        return len(self._heap)

    def push(self, item: T) -> None:
        self._heap.append((self.key(item), item))
        self._sift_up(len(self._heap) - 1)

    def pop(self) -> T | None:
        if not self._heap:
            return None
        top = self._heap[0]
        last = self._heap.pop()
        if self._heap:
            self._heap[0] = last
            self._sift_down(0)
        return top[1]

    def _sift_up(self, i: int) -> None:
        heap = self._heap
        while i > 0:
            p = (i - 1) // 2
            if heap[i][0] < heap[p][0]:
                heap[i], heap[p] = heap[p], heap[i]
                i = p
            else:
                break

    def _sift_down(self, i: int) -> None:
        heap = self._heap
        n = len(heap)
        while True:
            l, r = 2 * i + 1, 2 * i + 2
            best = i
            if l < n and heap[l][0] < heap[best][0]:
                best = l
            if r < n and heap[r][0] < heap[best][0]:
                best = r
            if best == i:
                break
            heap[i], heap[best] = heap[best], heap[i]
            i = best

    def sorted_items(self, limit: int | None = None) -> List[T]:
        # drain a copy so the heap itself is untouched
        copy: PriorityQueue[T] = PriorityQueue(self.key)
        copy._heap = list(self._heap)
        out: List[T] = []
        while not copy.is_empty() and (limit is None or len(out) < limit):
            out.append(copy.pop())
        return out


class HashTable(Generic[K, V]):
    """
    Separate-chaining hash table (djb2 over str(key)).
    keys() follows insertion order.
    """

    def __init__(self, bucket_count: int = 53):
        self._buckets: List[List[List[Any]]] = [[] for _ in range(bucket_count)]
        self._order: List[K] = []

    def _hash(self, key: K) -> int:
        h = 5381
        for ch in str(key):
            h = ((h << 5) + h + ord(ch)) & 0xFFFFFFFF
        return h % len(self._buckets)

    def set(self, key: K, value: V) -> None:
        bucket = self._buckets[self._hash(key)]
        for pair in bucket:
            if pair[0] == key:
                pair[1] = value
                return
        bucket.append([key, value])
        self._order.append(key)

    def get(self, key: K, default: V | None = None) -> V | None:
        for k, v in self._buckets[self._hash(key)]:
            if k == key:
                return v
        return default

    def __contains__(self, key: object) -> bool:
        return any(k == key for k, _ in self._buckets[self._hash(key)])

    def __getitem__(self, key: K) -> V:
        for k, v in self._buckets[self._hash(key)]:
            if k == key:
                return v
        raise KeyError(key)

    def __len__(self) -> int:
        return len(self._order)

    def keys(self) -> List[K]:
        return list(self._order)

    def values(self) -> List[V]:
        return [self[k] for k in self._order]

    def items(self) -> List[Tuple[K, V]]:
        return [(k, self[k]) for k in self._order]
