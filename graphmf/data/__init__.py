"""Data access: id spaces, ratings and feature loading, feature cache and interaction graph."""

from .features import (  # noqa: F401
    FeatureCache,
    SparseFeatures,
    infer_edge_feature_width,
    parse_feature_tokens,
)
from .graph import (  # noqa: F401
    Edge,
    EntityInteractions,
    Interaction,
    InteractionGraph,
    Vertex,
    build_interaction_graph,
)
from .indexers import EntityIdSpace, VertexIdTranslate  # noqa: F401
from .loaders import (  # noqa: F401
    DatasetArtifacts,
    DatasetDescription,
    RatingsTable,
    load_dataset,
    load_dataset_description,
    load_entity_features,
    load_ratings,
)
