from dataclasses import dataclass


@dataclass(frozen=True)
class Pricing:
    price_in: float = 0
    price_out: float = 0
    price_cache_read: float = 0
    price_cache_write: float = 0


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost: float = 0.0

    def with_cost(self, pricing: Pricing) -> "Usage":
        return Usage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_write_tokens=self.cache_write_tokens,
            cost=(
                self.input_tokens * pricing.price_in
                + self.output_tokens * pricing.price_out
                + self.cache_read_tokens * pricing.price_cache_read
                + self.cache_write_tokens * pricing.price_cache_write
            )
            / 1_000_000,
        )

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_write_tokens=self.cache_write_tokens + other.cache_write_tokens,
            cost=self.cost + other.cost,
        )

    def __iadd__(self, other: "Usage") -> "Usage":
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_write_tokens += other.cache_write_tokens
        self.cost += other.cost
        return self

    @property
    def context_tokens(self) -> int:
        """Prompt tokens the model read, cached or not; input_tokens excludes cache hits."""
        return self.input_tokens + self.cache_read_tokens + self.cache_write_tokens

    @property
    def total_tokens(self) -> int:
        return self.context_tokens + self.output_tokens

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_write_tokens": self.cache_write_tokens,
            "context_tokens": self.context_tokens,
            "total_tokens": self.total_tokens,
            "cost": self.cost,
        }
