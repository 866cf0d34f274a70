"""Feature modules: transport, parsing, storage, gems, configuration."""
