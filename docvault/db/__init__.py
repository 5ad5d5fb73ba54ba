"""DocVault metadata store — declarative base, models, sessions."""
