"""Classification, extraction, promotion and consolidation for user memory."""
