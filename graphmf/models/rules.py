"""
Update rules: one algorithm variant's parameter update for one entity.

Every rule works against the same ``ModelParameters`` stores and exposes a
single update entry point, ``apply_update(params, vertex, features)``, which
mutates the stores in place and returns the summed squared error of the
vertex's interactions (computed from pre-update predictions). Adding a variant
means adding a class with that method and registering it in ``UPDATE_RULES``;
the training controller and the parameter stores stay untouched.

Variants
--------
BiasSGD
    Koren (KDD 2008), eq. (5): per-interaction gradient step on biases and
    factors.
ALS
    Closed-form ridge solve of each entity's factor row and bias given its
    neighbours, visiting users and items alike.
SVDPP
    Bias-SGD plus an implicit-feedback term over the user's rated items.
LibFM_SGD
    Second-order factorisation machine trained by SGD over one-hot user/item
    ids, side features and edge features.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Mapping, Protocol, Sequence

import torch

from graphmf.data.features import FeatureCache
from graphmf.data.graph import EntityInteractions
from graphmf.errors import ConfigurationError, InvariantViolationError

from .parameters import ModelParameters

Visits = Literal["users", "all"]


class UpdateRule(Protocol):
    name: str
    visits: Visits

    def prepare(self, params: ModelParameters, features: FeatureCache | None) -> None:
        """Allocate any auxiliary stores the rule needs (absent ones only)."""

    def apply_update(
        self,
        params: ModelParameters,
        vertex: EntityInteractions,
        features: FeatureCache | None,
    ) -> float:
        """Update the stores for one entity; return its summed squared error."""


@dataclass(frozen=True)
class BiasSgdRule:
    """
    Biased matrix factorisation trained with plain SGD.

    For each interaction ``(u, i, r)``::

        e     = r - predict(u, i)
        b_u  += step * (e - bias_reg * b_u)
        b_i  += step * (e - bias_reg * b_i)
        p_u' = p_u + step * (e * q_i - factor_reg * p_u)
        q_i' = q_i + step * (e * p_u - factor_reg * q_i)

    Both factor rows are derived from snapshots taken before either is
    written. The user bias is written before the item bias is read; the two
    writes are not an atomic pair.
    """

    name: str = "BiasSGD"
    visits: Visits = "users"

    def prepare(self, params: ModelParameters, features: FeatureCache | None) -> None:
        return None

    def apply_update(
        self,
        params: ModelParameters,
        vertex: EntityInteractions,
        features: FeatureCache | None = None,
    ) -> float:
        hp = params.hyperparameters
        bias = params.bias
        factors = params.latent_factors
        user_id = vertex.entity_id
        squared_error = 0.0

        for interaction in vertex.interactions:
            item_id = interaction.neighbor_id
            error = interaction.value - params.predict(user_id, item_id)
            squared_error += error * error

            user_bias = float(bias[user_id])
            bias[user_id] = user_bias + hp.step_size * (error - hp.bias_reg * user_bias)
            item_bias = float(bias[item_id])
            bias[item_id] = item_bias + hp.step_size * (error - hp.bias_reg * item_bias)

            user_row = factors[user_id].clone()
            item_row = factors[item_id].clone()
            factors[user_id] = user_row + hp.step_size * (error * item_row - hp.factor_reg * user_row)
            factors[item_id] = item_row + hp.step_size * (error * user_row - hp.factor_reg * item_row)

        return squared_error


@dataclass(frozen=True)
class AlsRule:
    """
    Alternating least squares with biases.

    For an entity with neighbours ``V`` (n x k), ratings ``r`` and biases::

        p = solve(V^T V + factor_reg * n * I, V^T (r - b_self - b_nb))
        b_self = sum(r - b_nb - V p) / (n + bias_reg)

    Users and items are both visited; squared error is only reported from the
    user side so each rating is counted once.
    """

    name: str = "ALS"
    visits: Visits = "all"

    def prepare(self, params: ModelParameters, features: FeatureCache | None) -> None:
        if params.hyperparameters.factor_reg <= 0:
            raise ConfigurationError("ALS requires factor_reg > 0.")

    def apply_update(
        self,
        params: ModelParameters,
        vertex: EntityInteractions,
        features: FeatureCache | None = None,
    ) -> float:
        if not vertex.interactions:
            return 0.0
        hp = params.hyperparameters
        entity = vertex.entity_id
        neighbors = torch.tensor(vertex.neighbor_ids(), dtype=torch.long)
        ratings = torch.tensor(
            [interaction.value for interaction in vertex.interactions], dtype=torch.float64
        )

        squared_error = 0.0
        if vertex.is_user:
            for neighbor, rating in zip(neighbors.tolist(), ratings.tolist()):
                error = rating - params.predict(entity, neighbor)
                squared_error += error * error

        neighbor_rows = params.latent_factors.index_select(0, neighbors)
        neighbor_bias = params.bias.index_select(0, neighbors)
        count = neighbors.shape[0]

        targets = ratings - float(params.bias[entity]) - neighbor_bias
        gram = neighbor_rows.T @ neighbor_rows
        gram += hp.factor_reg * count * torch.eye(params.num_factors, dtype=torch.float64)
        row = torch.linalg.solve(gram, neighbor_rows.T @ targets)
        params.latent_factors[entity] = row

        residual = ratings - neighbor_bias - neighbor_rows @ row
        params.bias[entity] = float(residual.sum()) / (count + hp.bias_reg)
        return squared_error


IMPLICIT_FACTORS = "implicit_factors"


@dataclass(frozen=True)
class SvdppRule:
    """
    SVD++ (Koren, KDD 2008, eq. (15)).

    The user representation is ``p_u + |N(u)|^-1/2 * sum_{j in N(u)} y_j`` where
    ``N(u)`` is the set of items the user rated in this vertex's interaction
    list. Biases and ``p_u``/``q_i`` follow the bias-SGD steps with that
    representation; ``y_j`` is updated once per user with the accumulated
    gradient.
    """

    name: str = "SVDPP"
    visits: Visits = "users"

    def prepare(self, params: ModelParameters, features: FeatureCache | None) -> None:
        params.ensure_auxiliary(
            IMPLICIT_FACTORS,
            (params.num_rows, params.num_factors),
            std=params.hyperparameters.init_std,
        )

    @staticmethod
    def implicit_term(params: ModelParameters, history: Sequence[int]) -> torch.Tensor:
        if not history:
            return torch.zeros(params.num_factors, dtype=torch.float64)
        implicit = params.auxiliary[IMPLICIT_FACTORS]
        rows = implicit.index_select(0, torch.tensor(list(history), dtype=torch.long))
        return rows.sum(dim=0) / len(history) ** 0.5

    @classmethod
    def predict(
        cls, params: ModelParameters, user_id: int, item_id: int, history: Sequence[int]
    ) -> float:
        params.check_entity(user_id)
        params.check_entity(item_id)
        user_vector = params.latent_factors[user_id] + cls.implicit_term(params, history)
        dot = float(torch.dot(user_vector, params.latent_factors[item_id]))
        return dot + float(params.bias[user_id]) + float(params.bias[item_id])

    def apply_update(
        self,
        params: ModelParameters,
        vertex: EntityInteractions,
        features: FeatureCache | None = None,
    ) -> float:
        if not vertex.interactions:
            return 0.0
        hp = params.hyperparameters
        bias = params.bias
        factors = params.latent_factors
        implicit = params.auxiliary[IMPLICIT_FACTORS]
        user_id = vertex.entity_id
        history = vertex.neighbor_ids()
        norm = len(history) ** -0.5
        implicit_sum = self.implicit_term(params, history)
        implicit_grad = torch.zeros(params.num_factors, dtype=torch.float64)
        squared_error = 0.0

        for interaction in vertex.interactions:
            item_id = interaction.neighbor_id
            params.check_entity(item_id)
            user_row = factors[user_id].clone()
            item_row = factors[item_id].clone()
            user_vector = user_row + implicit_sum
            prediction = float(torch.dot(user_vector, item_row)) + float(bias[user_id]) + float(bias[item_id])
            error = interaction.value - prediction
            squared_error += error * error

            user_bias = float(bias[user_id])
            bias[user_id] = user_bias + hp.step_size * (error - hp.bias_reg * user_bias)
            item_bias = float(bias[item_id])
            bias[item_id] = item_bias + hp.step_size * (error - hp.bias_reg * item_bias)

            factors[user_id] = user_row + hp.step_size * (error * item_row - hp.factor_reg * user_row)
            factors[item_id] = item_row + hp.step_size * (error * user_vector - hp.factor_reg * item_row)
            implicit_grad += error * norm * item_row

        index = torch.tensor(history, dtype=torch.long)
        rows = implicit.index_select(0, index)
        implicit.index_copy_(0, index, rows + hp.step_size * (implicit_grad - hp.factor_reg * rows))
        return squared_error


GLOBAL_BIAS = "global_bias"
FEATURE_BIAS = "feature_bias"
FEATURE_FACTORS = "feature_factors"


@dataclass(frozen=True)
class FactorizationMachineRule:
    """
    Factorisation machine (Rendle, 2010) trained by SGD.

    The input vector holds a one-hot user id, a one-hot item id, the user's
    and the item's side features and the rating's edge features. Entity
    weights and factors live in ``bias``/``latent_factors``; side-feature
    weights and factors in auxiliary stores::

        y = w0 + sum_j w_j x_j
               + 1/2 sum_f [(sum_j v_jf x_j)^2 - sum_j v_jf^2 x_j^2]

    With no side features this is exactly the bias-SGD prediction plus ``w0``.
    """

    name: str = "LibFM_SGD"
    visits: Visits = "users"

    def prepare(self, params: ModelParameters, features: FeatureCache | None) -> None:
        num_features = features.num_features if features is not None else 0
        params.ensure_auxiliary(GLOBAL_BIAS, (1, 1))
        params.ensure_auxiliary(FEATURE_BIAS, (num_features, 1))
        params.ensure_auxiliary(
            FEATURE_FACTORS,
            (num_features, params.num_factors),
            std=params.hyperparameters.init_std,
        )

    @staticmethod
    def _side_features(
        user_id: int,
        item_id: int,
        edge_features: Mapping[int, float] | None,
        features: FeatureCache | None,
        num_features: int,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        merged: dict[int, float] = {}
        if features is not None:
            for entity in (user_id, item_id):
                for feature_id, value in features.get_features(entity).as_dict().items():
                    merged[feature_id] = merged.get(feature_id, 0.0) + value
        for feature_id, value in (edge_features or {}).items():
            merged[int(feature_id)] = merged.get(int(feature_id), 0.0) + float(value)
        for feature_id in merged:
            if not 0 <= feature_id < num_features:
                raise InvariantViolationError(
                    f"Feature id {feature_id} outside [0, {num_features})"
                )
        ids = torch.tensor(sorted(merged), dtype=torch.long)
        values = torch.tensor([merged[f] for f in sorted(merged)], dtype=torch.float64)
        return ids, values

    @classmethod
    def predict(
        cls,
        params: ModelParameters,
        user_id: int,
        item_id: int,
        features: FeatureCache | None = None,
        edge_features: Mapping[int, float] | None = None,
    ) -> float:
        params.check_entity(user_id)
        params.check_entity(item_id)
        feature_bias = params.auxiliary[FEATURE_BIAS]
        ids, x = cls._side_features(user_id, item_id, edge_features, features, feature_bias.shape[0])
        weights, rows, x_all = cls._active_terms(params, user_id, item_id, ids, x)
        return cls._score(params, weights, rows, x_all)

    @staticmethod
    def _active_terms(
        params: ModelParameters,
        user_id: int,
        item_id: int,
        feature_ids: torch.Tensor,
        feature_values: torch.Tensor,
    ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        entities = torch.tensor([user_id, item_id], dtype=torch.long)
        weights = torch.cat(
            [
                params.bias.index_select(0, entities),
                params.auxiliary[FEATURE_BIAS].index_select(0, feature_ids).reshape(-1),
            ]
        )
        rows = torch.cat(
            [
                params.latent_factors.index_select(0, entities),
                params.auxiliary[FEATURE_FACTORS].index_select(0, feature_ids),
            ]
        )
        x = torch.cat([torch.ones(2, dtype=torch.float64), feature_values])
        return weights, rows, x

    @staticmethod
    def _score(
        params: ModelParameters, weights: torch.Tensor, rows: torch.Tensor, x: torch.Tensor
    ) -> float:
        weighted = rows * x.unsqueeze(1)
        pairwise = 0.5 * float((weighted.sum(dim=0) ** 2 - (weighted ** 2).sum(dim=0)).sum())
        return float(params.auxiliary[GLOBAL_BIAS][0, 0]) + float(weights @ x) + pairwise

    def apply_update(
        self,
        params: ModelParameters,
        vertex: EntityInteractions,
        features: FeatureCache | None = None,
    ) -> float:
        hp = params.hyperparameters
        global_bias = params.auxiliary[GLOBAL_BIAS]
        feature_bias = params.auxiliary[FEATURE_BIAS]
        feature_factors = params.auxiliary[FEATURE_FACTORS]
        user_id = vertex.entity_id
        squared_error = 0.0

        for interaction in vertex.interactions:
            item_id = interaction.neighbor_id
            params.check_entity(user_id)
            params.check_entity(item_id)
            feature_ids, feature_values = self._side_features(
                user_id, item_id, interaction.features, features, feature_bias.shape[0]
            )
            weights, rows, x = self._active_terms(
                params, user_id, item_id, feature_ids, feature_values
            )
            error = interaction.value - self._score(params, weights, rows, x)
            squared_error += error * error

            w0 = float(global_bias[0, 0])
            global_bias[0, 0] = w0 + hp.step_size * (error - hp.bias_reg * w0)

            new_weights = weights + hp.step_size * (error * x - hp.bias_reg * weights)
            factor_sum = (rows * x.unsqueeze(1)).sum(dim=0)
            x_col = x.unsqueeze(1)
            gradient = x_col * factor_sum.unsqueeze(0) - rows * x_col ** 2
            new_rows = rows + hp.step_size * (error * gradient - hp.factor_reg * rows)

            params.bias[user_id] = new_weights[0]
            params.bias[item_id] = new_weights[1]
            params.latent_factors[user_id] = new_rows[0]
            params.latent_factors[item_id] = new_rows[1]
            if feature_ids.numel():
                feature_bias.index_copy_(0, feature_ids, new_weights[2:].unsqueeze(1))
                feature_factors.index_copy_(0, feature_ids, new_rows[2:])

        return squared_error


UPDATE_RULES: dict[str, type] = {
    BiasSgdRule.name: BiasSgdRule,
    AlsRule.name: AlsRule,
    SvdppRule.name: SvdppRule,
    FactorizationMachineRule.name: FactorizationMachineRule,
}


def build_update_rule(algorithm: str) -> UpdateRule:
    """Instantiate the update rule registered under ``algorithm``."""
    try:
        rule_cls = UPDATE_RULES[algorithm]
    except KeyError as exc:
        known = ", ".join(sorted(UPDATE_RULES))
        raise ConfigurationError(
            f"Unknown algorithm '{algorithm}'. Expected one of: {known}"
        ) from exc
    return rule_cls()
