"""Abstract confirmation prompt used by override paths."""

from abc import ABC, abstractmethod


class ConfirmationPrompt(ABC):
    """Asks a human to approve an operation that bypasses a safety check.

    Services never talk to a terminal directly. Overrides such as a forced
    close, or editing the scope of a task whose gates already passed, go
    through this interface so an unattended caller can be refused.
    """

    @abstractmethod
    def is_interactive(self) -> bool:
        """Return True when a human is available to answer prompts.

        Returns:
            False for scripts, CI runs and piped input
        """
        pass

    @abstractmethod
    def confirm(self, message: str) -> bool:
        """Show ``message`` and return whether the human approved.

        Only called when ``is_interactive()`` is True.

        Args:
            message: Explanation of what is being overridden

        Returns:
            True if the operation should proceed
        """
        pass


class NonInteractiveConfirmation(ConfirmationPrompt):
    """Default prompt for library use: nobody is there to answer."""

    def is_interactive(self) -> bool:
        return False

    def confirm(self, message: str) -> bool:
        return False
