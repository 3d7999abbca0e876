from abc import ABC, abstractmethod


class Command(ABC):
    """Abstract base class for all deck commands."""

    @abstractmethod
    def execute(self, context, card) -> None:
        """
        Execute the command.

        Args:
            context: The CommandContext object holding shared state.
            card: The deck card (key, parameters, source location) being run.
        """
        pass
