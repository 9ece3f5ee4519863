"""
generate_edge_topology.py
──────────────────────────────────────────────────────────────
Compute the edge-topology JSON used by the contour fitting for any
morphable model stored as .npz.
──────────────────────────────────────────────────────────────
Usage:
$ python generate_edge_topology.py --model share/sfm_shape_3448.npz \
                                   --output share/sfm_3448_edge_topology.json
"""
import argparse
import logging

from morphfit import config
from morphfit.edge_topology import generate_edge_topology
from morphfit.logging_config import setup_logging
from morphfit.morphablemodel import load_model

logger = logging.getLogger("morphfit.generate_edge_topology")


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Generate the edge topology of a model's triangle list.")
    parser.add_argument("--model", default=config.MODEL_PATH, help="morphable model (.npz)")
    parser.add_argument("--output", default=config.EDGE_TOPOLOGY_PATH, help="output .json path")
    args = parser.parse_args(argv)

    setup_logging()
    model = load_model(args.model)
    shape_model = model.shape_model
    topology = generate_edge_topology(shape_model.triangle_list, shape_model.num_vertices)
    topology.save(args.output)
    logger.info("triangles: %d, edges: %d", len(shape_model.triangle_list), topology.num_edges)
    logger.info("Finished generating edge-topology file and saved it as %s", args.output)


if __name__ == "__main__":
    main()
