import math


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up.

    This stands in for a real tokenizer, which can differ by about 30% either
    way depending on the model and the language of the text. Budgets built on
    it keep a safety margin.
    """
    if not text:
        return 0
    return math.ceil(len(text) / 4)
