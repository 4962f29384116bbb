"""
Execution Environment for the HAI Protocol model.

The protocol contracts assume a chain underneath them: a totally ordered
sequence of atomic state transitions, a block timestamp, and an event log for
off-chain indexers. This module provides the simulated equivalent.

Components register themselves with the environment and declare the
attributes that make up their state in STATE_FIELDS. A transition snapshots
every registered component before running and restores all of them if the
body raises, so a failed operation leaves no partial effects anywhere.
"""

import copy
import functools
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """A single entry in the audit log."""
    name: str
    emitter: str
    timestamp: int
    data: Dict[str, Any] = field(default_factory=dict)


class EventLog:
    """
    Append-only log of structured protocol events.

    The log is not authoritative state; it exists so that external tooling
    (and tests) can follow what happened. Events emitted inside a transition
    that is later reverted are discarded along with it.
    """

    def __init__(self):
        self._events: List[Event] = []

    def emit(self, name, emitter, timestamp, /, **data):
        event = Event(name=name, emitter=emitter, timestamp=timestamp, data=data)
        self._events.append(event)
        logger.debug("%s emitted %s %s", emitter, name, data)
        return event

    def filter(self, name):
        """Returns all events with the given name, oldest first."""
        return [event for event in self._events if event.name == name]

    def last(self, name=None):
        """Returns the most recent event, optionally restricted to a name."""
        events = self.filter(name) if name else self._events
        return events[-1] if events else None

    def truncate(self, length):
        del self._events[length:]

    def __len__(self):
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(list(self._events))


class ExecutionEnvironment:
    """
    Simulates the chain the protocol runs on.

    Provides the current timestamp, the shared event log and atomic
    transitions over every registered component.
    """

    def __init__(self, timestamp=0):
        self.timestamp = timestamp
        self.events = EventLog()
        self._components = []
        self._depth = 0

    def register(self, component):
        """Registers a component whose STATE_FIELDS take part in rollbacks."""
        if component not in self._components:
            self._components.append(component)

    def advance(self, seconds):
        """Moves the clock forward by the given number of seconds."""
        if seconds < 0:
            raise ValueError("Time cannot move backwards")
        self.timestamp += seconds

    def set_timestamp(self, timestamp):
        if timestamp < self.timestamp:
            raise ValueError("Time cannot move backwards")
        self.timestamp = timestamp

    def emit(self, name, emitter, /, **data):
        return self.events.emit(name, emitter, self.timestamp, **data)

    def _snapshot(self):
        # References between registered components are kept, not copied
        memo = {id(component): component for component in self._components}
        state = []
        for component in self._components:
            fields = {name: copy.deepcopy(getattr(component, name), memo) for name in component.STATE_FIELDS}
            state.append((component, fields))
        return state, len(self.events)

    def _restore(self, snapshot):
        state, event_count = snapshot
        for component, fields in state:
            for name, value in fields.items():
                setattr(component, name, value)
        self.events.truncate(event_count)

    @contextmanager
    def atomic(self, isolated=False):
        """
        Runs the enclosed block as one atomic transition.

        Nested blocks join the outermost transition unless `isolated` is set,
        in which case the block gets its own snapshot so that a failure inside
        it can be caught without discarding the enclosing work.
        """
        take_snapshot = isolated or self._depth == 0
        snapshot = self._snapshot() if take_snapshot else None
        self._depth += 1
        try:
            yield
        except BaseException:
            if snapshot is not None:
                self._restore(snapshot)
            raise
        finally:
            self._depth -= 1


def transition(method):
    """Wraps a component method so that it runs as one atomic transition."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self.env.atomic():
            return method(self, *args, **kwargs)
    return wrapper
