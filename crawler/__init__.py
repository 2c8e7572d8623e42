"""Multi-site scraping engine with a task queue and live progress streaming."""

__version__ = "0.1.0"
