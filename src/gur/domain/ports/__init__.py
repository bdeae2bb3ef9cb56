"""Ports: abstractions the services depend on."""

from gur.domain.ports.confirmation import ConfirmationPrompt, NonInteractiveConfirmation

__all__ = ["ConfirmationPrompt", "NonInteractiveConfirmation"]
