"""batch-prep: provision a reusable VM image and an Azure Batch pool."""

__version__ = "0.1.0"
