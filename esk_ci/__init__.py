"""ESK kernel CI: flag-driven KernelSU/SuSFS/LXC patch composition and build"""

__version__ = "1.0.0"
