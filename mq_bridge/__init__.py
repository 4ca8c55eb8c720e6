"""Route messages between consumers and publishers through composable middlewares."""

__version__ = "0.1.0"