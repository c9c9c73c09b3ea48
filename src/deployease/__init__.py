"""DeployEase: blue/green traffic switching for statically hosted sites."""

__version__ = "0.1.0"
