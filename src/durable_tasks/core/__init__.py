"""Pure domain layer: task models, failure policy and circuit breaking.

Nothing in this package touches storage. The classifier and the retry
policy are total functions that return decisions instead of raising, so the
queue layer can apply them inside its own transactions.
"""
