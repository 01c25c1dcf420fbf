"""Generation core: adapters, polling, media, storage and notifications."""
