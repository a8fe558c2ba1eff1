"""Feature contract and the transaction -> vector adapter."""
