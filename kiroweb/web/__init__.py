"""Session store, dispatcher, runner and HTTP surface."""
