"""HTS tariff schedule service: live schedule models and the checkpointed importer."""
