"""Studio booking and prepaid credits service."""
