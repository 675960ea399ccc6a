"""reelqueue: recurring Instagram Reels posting scheduler and publish pipeline."""

__version__ = "0.1.0"
