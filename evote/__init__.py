"""Core of the e-voting system, shared by the voting and nomination services."""
