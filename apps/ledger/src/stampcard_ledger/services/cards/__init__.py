from .card_store import CardBalance, CardMutation, ClientCardStore, compute_level  # noqa: F401
