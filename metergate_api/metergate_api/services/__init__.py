"""Service layer: generation worker client, credit purchases and maintenance."""
