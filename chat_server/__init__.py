"""Legal chat server: streaming AI turns with inline citation extraction."""
