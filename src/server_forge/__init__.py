"""server-forge — automated Linux server provisioning with rollback."""

__version__ = "0.1.0"
