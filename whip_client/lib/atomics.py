import threading


class AtomicFlag:
  """Boolean flag with compare-and-set semantics, safe to use from signal handlers, event loop
  callbacks and media engine threads at the same time."""

  def __init__(self, value: bool = False) -> None:
    self._lock = threading.Lock()
    self._value = value

  def compare_and_set(self, expected: bool, value: bool) -> bool:
    """Sets the flag to :value only if it currently is :expected.

    :return: True if the flag was updated by this call
    """
    with self._lock:
      if self._value != expected:
        return False
      self._value = value
      return True

  def is_set(self) -> bool:
    with self._lock:
      return self._value


class AtomicCounter:
  def __init__(self, value: int = 0) -> None:
    self._lock = threading.Lock()
    self._value = value

  def increment(self) -> int:
    """Increments the counter and returns the new value."""
    with self._lock:
      self._value += 1
      return self._value

  def get(self) -> int:
    with self._lock:
      return self._value
