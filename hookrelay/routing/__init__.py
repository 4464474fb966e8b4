"""Notification routing: directives, processors and item resolution."""
