"""Sampler chain for the embedded engine.

The chain always runs in the same order: temperature scaling, top-p
truncation, then a final distribution sampler that draws one token id.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

from .types import SamplingConfig

if TYPE_CHECKING:
    import torch


class TemperatureStep:
    """Scale logits by 1/temperature. Temperature 0 keeps only the arg-max."""

    def __init__(self, temperature: float) -> None:
        self.temperature = float(temperature)

    def __call__(self, logits: torch.Tensor) -> torch.Tensor:
        import torch

        if self.temperature <= 0:
            greedy = torch.full_like(logits, float("-inf"))
            idx = torch.argmax(logits, dim=-1, keepdim=True)
            return greedy.scatter(-1, idx, logits.gather(-1, idx))
        return logits / self.temperature


class TopPStep:
    """Mask every token outside the smallest set whose probability mass reaches top_p."""

    def __init__(self, top_p: float, min_keep: int = 1) -> None:
        self.top_p = float(top_p)
        self.min_keep = max(int(min_keep), 1)

    def __call__(self, logits: torch.Tensor) -> torch.Tensor:
        import torch

        if self.top_p >= 1.0:
            return logits
        sorted_logits, sorted_idx = torch.sort(logits, descending=True, dim=-1)
        cumulative = torch.softmax(sorted_logits, dim=-1).cumsum(dim=-1)
        # Drop a token once the mass *before* it already reaches top_p.
        remove = (cumulative - torch.softmax(sorted_logits, dim=-1)) >= self.top_p
        remove[..., : self.min_keep] = False
        mask = remove.scatter(-1, sorted_idx, remove)
        return logits.masked_fill(mask, float("-inf"))


class DistSampler:
    """Draw one token id from softmax(logits)."""

    def __init__(self, seed: int | None = None) -> None:
        self.seed = seed
        self._generator = None

    def __call__(self, logits: torch.Tensor) -> int:
        import torch

        if self.seed is not None and self._generator is None:
            self._generator = torch.Generator(device=logits.device)
            self._generator.manual_seed(int(self.seed))
        # Numerical stability: softmax in fp32.
        probs = torch.softmax(logits.float(), dim=-1).reshape(-1, logits.shape[-1])
        if torch.isnan(probs).any() or torch.isinf(probs).any() or (probs < 0).any():
            probs = torch.clamp(torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0), min=0.0)
            z = probs.sum(dim=-1, keepdim=True)
            if (z <= 0).any():
                return int(torch.argmax(logits.reshape(-1, logits.shape[-1])[0]).item())
            probs = probs / z
        token = torch.multinomial(probs, 1, generator=self._generator)
        return int(token.reshape(-1)[0].item())


class SamplerChain:
    def __init__(self, steps: Sequence, final: DistSampler) -> None:
        self.steps = list(steps)
        self.final = final

    def sample(self, logits: torch.Tensor) -> int:
        for step in self.steps:
            logits = step(logits)
        return self.final(logits)


def build_sampler_chain(config: SamplingConfig) -> SamplerChain:
    return SamplerChain(
        [TemperatureStep(config.temperature), TopPStep(config.top_p)],
        DistSampler(config.seed),
    )
