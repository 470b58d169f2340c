"""
Main timetabling service module.

This module provides the end-to-end generation service used by the CLI and
the REST API. It orchestrates loading input data, running the engine and
saving the results.
"""
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import engine
from .config import EngineConfig
from .data.converter import DataConverter
from .data.loader import TimetableDataLoader
from .errors import TimetablerError
from .session import GenerationResult

logger = logging.getLogger(__name__)


class TimetableOptimizer:
    """
    End-to-end timetable generation service.

    This class is responsible for:
    - Loading input data
    - Running search and improvement through an engine handle
    - Generating and saving results
    """

    def __init__(self, input_path: str, output_dir: str, config: Optional[EngineConfig] = None):
        """
        Initialize the service.

        Args:
            input_path: JSON input file or directory containing input CSV files
            output_dir: Directory where output files will be saved
            config: Engine configuration; defaults when omitted
        """
        self.input_path = Path(input_path)
        self.output_dir = Path(output_dir)
        self.config = config or EngineConfig()
        self.converter = DataConverter()

        self.metrics = {
            'load_time': 0.0,
            'generation_time': 0.0,
            'total_time': 0.0,
        }

    def load_data(self) -> Dict[str, Any]:
        """
        Load input data into the raw mapping the engine consumes.

        Returns:
            Raw input mapping
        """
        start_time = time.time()
        logger.info(f"Loading data from {self.input_path}")

        try:
            raw = TimetableDataLoader(str(self.input_path)).load_raw()

            self.metrics['load_time'] = time.time() - start_time
            logger.info(f"Data loaded successfully in {self.metrics['load_time']:.2f} seconds")

            return raw
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Error loading data: {str(e)}")
            raise

    @staticmethod
    def load_previous(path: str) -> List[Dict[str, Any]]:
        """Load a timetable written by ``save_results`` (Timetable.json)."""
        with open(path, 'r') as f:
            records = json.load(f)
        if not isinstance(records, list):
            raise ValueError(f"{path} must contain a list of timetable records")
        logger.info(f"Loaded {len(records)} previous placements from {path}")
        return records

    def run_generation(self, raw: Dict[str, Any],
                       previous: Optional[List[Dict[str, Any]]] = None) -> GenerationResult:
        """
        Run the engine on raw input.

        Raises:
            ModelError: the input can never satisfy the hard constraints
        """
        start_time = time.time()
        handle = engine.initialize(self.config)
        try:
            engine.load_model(handle, raw)
            result = engine.generate(handle, previous)
        finally:
            engine.cleanup(handle)

        self.metrics['generation_time'] = time.time() - start_time
        logger.info(f"Generation completed in {self.metrics['generation_time']:.2f} seconds")
        return result

    def save_results(self, result: GenerationResult) -> Dict[str, str]:
        return self.converter.save_results(result, str(self.output_dir))

    def optimize(self, previous_path: Optional[str] = None) -> Dict[str, Any]:
        """
        Run the complete generation process.

        Args:
            previous_path: Optional Timetable.json of an earlier run to reuse

        Returns:
            Dictionary containing the outcome, output files, metrics and the
            process exit code
        """
        total_start_time = time.time()
        logger.info("Starting complete timetable generation")

        try:
            raw = self.load_data()
            previous = self.load_previous(previous_path) if previous_path else None
            result = self.run_generation(raw, previous)
            output_files = self.save_results(result)

            self.metrics['total_time'] = time.time() - total_start_time

            results = {
                'status': result.status.value,
                'timetable_summary': {
                    'lessons': result.diagnostics.get('lessons', 0),
                    'placed': result.diagnostics.get('placed', 0),
                    'initial_penalty': result.diagnostics.get('initial_penalty'),
                    'final_penalty': result.diagnostics.get('final_penalty'),
                },
                'conflict': result.conflict.to_dict() if result.conflict is not None else None,
                'output_files': output_files,
                'metrics': dict(self.metrics, **result.metrics),
                'exit_code': engine.exit_code(result),
                'success': result.ready,
            }

            logger.info(f"Generation finished with status {result.status.value} "
                        f"in {self.metrics['total_time']:.2f} seconds")

            return results

        except (TimetablerError, OSError, ValueError, KeyError) as e:
            logger.error(f"Generation failed: {str(e)}")

            self.metrics['total_time'] = time.time() - total_start_time

            results = {
                'error': str(e),
                'error_kind': getattr(e, 'kind', type(e).__name__),
                'entities': list(getattr(e, 'entities', ())),
                'metrics': self.metrics,
                'exit_code': engine.EXIT_INVALID_INPUT,
                'success': False,
            }

            return results
