"""
seqsfm/pipeline/engine.py

Sequential reconstruction engine.

State machine:
    INIT -> SEEDING -> GROWING -> DONE
                  \\         \\
                   +---------+--> FAILED

This is a thin orchestrator over the pipeline stages. ALL numeric
defaults come from config.py.
"""

from __future__ import annotations
import logging
from typing import Dict, Optional

from seqsfm.diagnostics.sfm_diagnostics import (
    compute_residuals_stats,
    format_scene_summary,
    residual_histogram,
)
from seqsfm.features import FeaturesProvider, MatchesProvider
from seqsfm.scene import SfMData
from seqsfm.utils.logging_utils import log_block, make_logger, timed

from .ba_runner import refine_until_stable
from .cleanup import run_final_cleanup
from .config import SfMConfig
from .graph_filter import filter_view_graph
from .initialize import automatic_initial_pair, choose_initial_pair_manually, make_initial_pair_3d
from .pair_selection import NoPairSelector, PairSelector
from .registration import find_images_with_possible_resection, resection
from .state import EngineStatus, SfMResult, SfMState
from .tracks_builder import build_tracks


class SequentialSfMEngine:
    """
    Incremental SfM over a scene, its features and pairwise matches.

    Usage:
        engine = SequentialSfMEngine(sfm_data, features, matches, config)
        ok = engine.process()       # sfm_data is mutated in place
        engine.status               # EngineStatus.DONE or EngineStatus.FAILED
    """

    def __init__(
        self,
        sfm_data: SfMData,
        features: FeaturesProvider,
        matches: MatchesProvider,
        config: Optional[SfMConfig] = None,
        pair_selector: Optional[PairSelector] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or SfMConfig()
        self.config.validate()
        self.pair_selector = pair_selector or NoPairSelector()
        self.logger = logger or make_logger(
            "seqsfm", level=(logging.INFO if self.config.verbose else logging.WARNING)
        )
        self.state = SfMState(sfm_data, features, matches)
        self.state.restricted = self.config.resection.window_size is not None
        self.stats: Dict[str, float] = {}

    @property
    def status(self) -> EngineStatus:
        return self.state.status

    @property
    def sfm_data(self) -> SfMData:
        return self.state.sfm_data

    def result(self) -> SfMResult:
        return self.state.build_result(self.stats)

    def _fail(self, msg: str) -> bool:
        self.logger.error(msg)
        self.state.status = EngineStatus.FAILED
        return False

    # =========================================================
    # Stages
    # =========================================================

    def _choose_seed(self):
        cfg = self.config
        if cfg.initial_pair is not None:
            self.logger.info(f"Using configured initial pair {cfg.initial_pair}")
            return tuple(cfg.initial_pair)
        pair = automatic_initial_pair(self.state, cfg.seed, cfg.num_workers, self.logger)
        if pair is not None:
            return pair
        self.logger.info("Automatic initial pair choice failed, asking the pair selector")
        return choose_initial_pair_manually(self.state, self.pair_selector, cfg.seed, self.logger)

    def _grow(self) -> None:
        cfg = self.config
        state = self.state
        while True:
            group = find_images_with_possible_resection(
                state, cfg.resection, cfg.num_workers, self.logger
            )
            if group is None:
                break
            if not group:
                continue

            added = False
            n_before = len(state.sfm_data.structure)
            for view_id in group:
                ok = resection(
                    state, view_id, cfg.resection, cfg.triangulation, cfg.num_workers, self.logger
                )
                state.mark_attempted(view_id)
                if ok:
                    state.mark_reconstructed(view_id)
                    added = True

            state.n_groups += 1
            if added:
                self.logger.info(
                    f"--- Resection group {state.n_groups}: {group} | "
                    f"3D points {n_before} -> {len(state.sfm_data.structure)} ---"
                )
                refine_until_stable(state, cfg.ba, cfg.cleanup, self.logger)

    def process(self) -> bool:
        """Run the whole reconstruction. Returns True on success."""
        cfg = self.config
        state = self.state
        log = self.logger
        state.status = EngineStatus.INIT

        with timed(log, "View graph filtering"):
            if not filter_view_graph(state, log):
                return self._fail("Fewer than two views left after connectivity filtering")

        with timed(log, "Building tracks"):
            if not build_tracks(state, log):
                return self._fail("No track could be built from the matches")

        state.status = EngineStatus.SEEDING
        with timed(log, "Initialization"):
            pair = self._choose_seed()
            if pair is None:
                return self._fail("Cannot find a valid initial pair")
            if not make_initial_pair_3d(state, pair, cfg.seed, cfg.ba.seed_max_nfev, log):
                return self._fail(f"Initial pair {pair} could not be reconstructed")

        state.status = EngineStatus.GROWING
        with timed(log, "Incremental registration"):
            self._grow()

        with timed(log, "Final cleanup"):
            run_final_cleanup(state, cfg.cleanup, log)

        stats = compute_residuals_stats(state.sfm_data)
        self.stats = stats
        log.info(f"Structure from Motion statistics: {format_scene_summary(state.sfm_data)}")
        log.info(
            f"Residuals: n={int(stats['n'])} mean={stats['mean']:.3f}px "
            f"median={stats['median']:.3f}px max={stats['max']:.3f}px"
        )
        log_block(log, "Histogram of residuals:", residual_histogram(state.sfm_data))

        state.status = EngineStatus.DONE
        return True
