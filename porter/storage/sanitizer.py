"""Moves sensitive parameter and output values out of the document store.

On write, every value the bundle marks sensitive is saved to the secret
store under ``<id><name>`` and only that key is persisted. On read the
inverse substitution puts the plaintext back on the in-memory record.
"""

from __future__ import annotations

import logging
from typing import Any

from porter.cnab.bundle import ExtendedBundle
from porter.core.context import Context
from porter.errors import NotFoundError, SecretStoreError, ValidationError
from porter.storage.models import SOURCE_SECRET, Output, ParameterSet, ParameterStrategy
from porter.storage.secrets import SecretStore

logger = logging.getLogger(__name__)


def secret_key(id: str, name: str) -> str:
    """Key a sensitive value is stored under.

    Examples
    --------
    >>> secret_key("RUN123", "password")
    'RUN123password'
    """
    return f"{id}{name}"


class Sanitizer:
    """Swaps sensitive values for secret references and back.

    Parameters
    ----------
    secrets:
        Where plaintext sensitive values are kept.
    """

    def __init__(self, secrets: SecretStore) -> None:
        self.secrets = secrets

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def clean_raw_parameters(
        self,
        ctx: Context,
        params: dict[str, Any],
        bundle: ExtendedBundle,
        id: str,
    ) -> list[ParameterStrategy]:
        """Turn resolved values into strategies, sending sensitive ones to the secret store.

        Raises
        ------
        ValidationError
            A value cannot be written as a string.
        SecretStoreError
            The secret store rejected a value.
        """
        strategies = [
            ParameterStrategy.from_value(name, ExtendedBundle.write_parameter_to_string(name, value))
            for name, value in params.items()
        ]
        return self._clean(ctx, strategies, bundle, id)

    def clean_parameters(
        self,
        ctx: Context,
        parameter_set: ParameterSet,
        bundle: ExtendedBundle,
        id: str,
    ) -> ParameterSet:
        """Return a copy of ``parameter_set`` with its sensitive values moved to secrets."""
        cleaned = parameter_set.model_copy(deep=True)
        cleaned.parameters = self._clean(ctx, cleaned.parameters, bundle, id)
        return cleaned

    def _clean(
        self,
        ctx: Context,
        strategies: list[ParameterStrategy],
        bundle: ExtendedBundle,
        id: str,
    ) -> list[ParameterStrategy]:
        cleaned: list[ParameterStrategy] = []
        for strategy in strategies:
            if strategy.is_secret or not bundle.is_sensitive_parameter(strategy.name):
                cleaned.append(strategy)
                continue
            key = secret_key(id, strategy.name)
            self.secrets.create(ctx, SOURCE_SECRET, key, strategy.source.value)
            cleaned.append(ParameterStrategy.from_secret(strategy.name, key))
        return cleaned

    def restore_parameter_set(
        self,
        ctx: Context,
        parameter_set: ParameterSet,
        bundle: ExtendedBundle,
    ) -> dict[str, Any]:
        """Resolve every strategy and convert it to the type the bundle declares.

        Raises
        ------
        NotFoundError
            A referenced secret does not exist.
        """
        values: dict[str, Any] = {}
        for strategy in parameter_set.parameters:
            raw = strategy.source.value
            if strategy.is_secret:
                raw = self.secrets.resolve(ctx, SOURCE_SECRET, raw)
            try:
                values[strategy.name] = bundle.convert_parameter_value(strategy.name, raw)
            except ValidationError:
                values[strategy.name] = raw
        return values

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def clean_output(self, ctx: Context, output: Output, bundle: ExtendedBundle) -> Output:
        """Replace a sensitive output's value with its secret key.

        Outputs the bundle does not define are returned unchanged.
        """
        if output.name not in bundle.outputs or not bundle.is_sensitive_output(output.name):
            return output
        key = secret_key(output.run_id, output.name)
        self.secrets.create(ctx, SOURCE_SECRET, key, output.text)
        return output.model_copy(update={"key": key, "value": b""})

    def restore_output(self, ctx: Context, output: Output) -> Output:
        if not output.key:
            return output
        try:
            value = self.secrets.resolve(ctx, SOURCE_SECRET, output.key)
        except (NotFoundError, SecretStoreError) as exc:
            logger.warning("Unable to resolve sensitive output %s: %s", output.name, exc)
            return output.model_copy(update={"value": b""})
        return output.model_copy(update={"value": value.encode("utf-8")})

    def restore_outputs(self, ctx: Context, outputs: list[Output]) -> list[Output]:
        return [self.restore_output(ctx, output) for output in outputs]
