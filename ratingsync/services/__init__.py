"""Domain services: transactions, entity resolution, integrity audit and repair."""
