"""HTTP surface for the notes chat service."""
