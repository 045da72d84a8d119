from dataclasses import dataclass

PER_MILLION = 1_000_000.0


@dataclass(frozen=True, slots=True)
class ModelRate:
    """
    ModelRate holds published USD prices per million tokens.
    """

    input: "float"
    cached_input: "float"
    output: "float"


# published list prices, USD per 1M tokens
RATES: "dict[str, ModelRate]" = {
    "gpt-5": ModelRate(input=1.25, cached_input=0.125, output=10.0),
    "gpt-5-mini": ModelRate(input=0.6, cached_input=0.06, output=2.0),
    "gpt-5-nano": ModelRate(input=0.2, cached_input=0.02, output=0.8),
    "claude-sonnet-4": ModelRate(input=3.0, cached_input=0.3, output=15.0),
    "claude-opus-4": ModelRate(input=15.0, cached_input=1.5, output=75.0),
    "claude-3-5-haiku": ModelRate(input=0.8, cached_input=0.08, output=4.0),
}

# served under a different name but billed like the target
ALIASES: "dict[str, str]" = {
    "gpt-5-codex": "gpt-5",
}

_PREFIXES = ("openrouter/openai/", "openai/", "azure/", "anthropic/")


def normalize_model_name(model: "str") -> "str":
    name = model.strip().lower()
    for prefix in _PREFIXES:
        if name.startswith(prefix):
            return name[len(prefix):]
    return name


def canonical_model(model: "str") -> "str | None":
    """
    maps a logged model name onto a priced model: exact match first,
    then a known alias, then the longest priced name the model starts
    with (dated snapshots such as gpt-5-2025-08-07).
    """
    name = normalize_model_name(model)
    if name in RATES:
        return name
    if name in ALIASES:
        return ALIASES[name]

    for alias, target in ALIASES.items():
        if name.startswith(alias):
            return target

    matches = [priced for priced in RATES if name.startswith(priced)]
    if matches:
        return max(matches, key=len)
    return None


def rate_for(model: "str") -> "ModelRate | None":
    canonical = canonical_model(model)
    if canonical is None:
        return None
    return RATES[canonical]


def token_cost(
    input_tokens: "int",
    cached_input_tokens: "int",
    output_tokens: "int",
    rate: "ModelRate",
) -> "float":
    """
    Cached input is a subset of input and billed at the cached rate;
    reasoning tokens are part of output and not billed again.
    """
    cached = min(cached_input_tokens, input_tokens)
    uncached = input_tokens - cached
    return (uncached * rate.input + cached * rate.cached_input + output_tokens * rate.output) / PER_MILLION
