"""
Base class for observation functions.

An observation function is handed to the control loop to decide what observation is returned
at every transition. It reads the solver state in any way it wants (caching, scaling...), while
the observation it returns is a plain, self-contained record.
"""
from abc import ABC, abstractmethod
from typing import Generic, Optional, TypeVar

from env.state import StateAccessor

Observation = TypeVar('Observation')


class ObservationFunction(ABC, Generic[Observation]):

    def reset(self, initial_state: StateAccessor) -> None:
        """Called on the initial state at the beginning of every episode. Does nothing by default."""

    @abstractmethod
    def obtain_observation(self, state: StateAccessor) -> Optional[Observation]:
        """Called whenever the control loop needs an observation; None when none applies."""
