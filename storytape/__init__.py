"""Recording, uploading, playback and pairing logic for a voice storybook device."""

__version__ = "0.1.0"

__all__ = [
    "api",
    "ble_pairing",
    "book",
    "cloud_sync",
    "navigation",
    "pairing",
    "playback",
    "prefs",
    "recorder",
    "status",
    "uploader",
]