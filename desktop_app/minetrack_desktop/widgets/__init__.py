"""Qt widgets of the desktop companion."""
