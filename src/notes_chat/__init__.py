"""Chat with PDF notes stored in Google Drive, answered by Gemini."""

__version__ = "1.0.0"
