"""Infrastructure layer: storage, configuration, logging, errors."""
