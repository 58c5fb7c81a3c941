"""
Main pipeline module for FixelStats.

This module provides a high-level interface for running a complete
fixel-based analysis: connectivity from tractography, smoothing, GLM,
connectivity-based fixel enhancement and permutation testing.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import nibabel as nib
import numpy as np
import pandas as pd

from fixelstats import __version__
from fixelstats.config import Config, load_config
from fixelstats.core.cfe import CFEEnhancer
from fixelstats.core.connectivity import build_connectivity, normalize_connectivity
from fixelstats.core.data_loader import FixelDataLoader, smooth_fixel_data
from fixelstats.core.design_matrix import DesignMatrixBuilder
from fixelstats.core.glm import GLMTestBase, GLMTTestFixed, GLMTTestVariable, all_stats
from fixelstats.core.permtest import (
    precompute_default_permutation,
    precompute_empirical_stat,
    run_permutations,
)
from fixelstats.core.permutation import PermutationStack, statistic2pvalue

logger = logging.getLogger(__name__)

PARTICIPANTS_EXTENSIONS = {".tsv": "\t", ".csv": ","}


class FixelCFEPipeline:
    """
    High-level pipeline for fixel-based analysis with CFE.

    This class orchestrates the complete analysis workflow:
    1. Input loading and validation (template, subjects, design, contrasts,
       permutations, fixel-wise design columns)
    2. Fixel-fixel connectivity from tractography
    3. Smoothing of the fixel data along fibre tracts
    4. Default-permutation GLM outputs (betas, effect sizes, standard deviation)
    5. CFE of the t statistic and permutation testing
    6. FWE-corrected and uncorrected p-values

    Parameters
    ----------
    fixel_dir : str or Path
        Template fixel directory holding the index, directions and subject
        fixel data files.
    subjects_file : str or Path
        Text file listing the subject fixel data files.
    design : str, Path, pd.DataFrame or np.ndarray
        Design matrix: numeric text file, participants table (.tsv/.csv,
        combined with the ``design`` configuration section) or array.
    contrast : str, Path, np.ndarray or list of str
        Contrast matrix file, array, or contrast expressions.
    tracks : str or Path
        Track file used to compute fixel-fixel connectivity.
    output_dir : str or Path
        Output fixel directory.
    config : Config, str, Path, or dict, optional
        Configuration (Config object, path to config file, or dict).
    columns : list of str or Path, optional
        Subject list files of fixel-wise design matrix columns.

    Attributes
    ----------
    config : Config
        Configuration object.
    data_loader : FixelDataLoader
        Fixel template and data loader.
    design_builder : DesignMatrixBuilder
        Design matrix and contrasts.
    glm_test : GLMTestBase
        Permutable t-test selected for the data.
    enhancer : CFEEnhancer
        CFE operator.
    results : dict
        Computed outputs, keyed by output name.
    """

    def __init__(
        self,
        fixel_dir: Union[str, Path],
        subjects_file: Union[str, Path],
        design: Union[str, Path, pd.DataFrame, np.ndarray],
        contrast: Union[str, Path, np.ndarray, List[str]],
        tracks: Union[str, Path],
        output_dir: Union[str, Path],
        config: Optional[Union[Config, str, Path, Dict]] = None,
        columns: Optional[Sequence[Union[str, Path]]] = None,
    ):
        self.fixel_dir = Path(fixel_dir)
        self.subjects_file = Path(subjects_file)
        self.design = design
        self.contrast = contrast
        self.tracks = Path(tracks)
        self.output_dir = Path(output_dir)
        self.columns = [Path(c) for c in (columns or [])]

        if config is None:
            self.config = Config()
        elif isinstance(config, Config):
            self.config = config
        elif isinstance(config, dict):
            self.config = Config(**config)
        else:
            self.config = load_config(config)

        self._setup_logging()

        self.data_loader: Optional[FixelDataLoader] = None
        self.design_builder: Optional[DesignMatrixBuilder] = None
        self.glm_test: Optional[GLMTestBase] = None
        self.enhancer: Optional[CFEEnhancer] = None
        self.permutations: Optional[PermutationStack] = None
        self.nonstationary_permutations: Optional[PermutationStack] = None
        self.results: Dict[str, np.ndarray] = {}
        self.saved_files: Dict[str, Path] = {}

        self._subject_data: Optional[np.ndarray] = None
        self._element_columns: List[np.ndarray] = []
        self._nans_in_columns = False

        logger.info("Initializing FixelStats pipeline")
        logger.info(f"Fixel directory: {self.fixel_dir}")
        logger.info(f"Output directory: {self.output_dir}")

    def _setup_logging(self) -> None:
        """Configure logging based on verbosity setting."""
        verbose = self.config.get("verbose", 1)

        if verbose == 0:
            level = logging.WARNING
        elif verbose == 1:
            level = logging.INFO
        else:
            level = logging.DEBUG

        logging.basicConfig(
            level=level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        logging.getLogger("nibabel").setLevel(logging.WARNING)

    @property
    def _progress(self) -> bool:
        return self.config.get("verbose", 1) > 0

    @property
    def num_subjects(self) -> int:
        if self._subject_data is None:
            raise ValueError("Inputs not loaded. Call load_inputs() first.")
        return self._subject_data.shape[1]

    @property
    def num_contrasts(self) -> int:
        return len(self.design_builder.contrasts)

    def _postfix(self, contrast: int) -> str:
        return f"_{contrast}" if self.num_contrasts > 1 else ""

    # ------------------------------------------------------------------
    # Input loading
    # ------------------------------------------------------------------

    def load_inputs(self) -> None:
        """
        Load and cross-validate every input except the tractography.

        Raises
        ------
        ValueError
            On any structural mismatch between template, subjects, design,
            contrasts, permutations and fixel-wise columns.
        """
        self.data_loader = FixelDataLoader(self.fixel_dir)
        self._subject_data, subject_paths = self.data_loader.load_cohort(self.subjects_file)
        num_subjects = len(subject_paths)
        logger.info(f"Number of subjects: {num_subjects}")

        self.design_builder = self._load_design()
        self._load_permutations(num_subjects)

        self.design_builder.append_element_columns(len(self.columns))
        self._load_contrasts()

        self._element_columns, self._nans_in_columns = self.data_loader.load_element_columns(
            self.columns, num_subjects
        )
        self.design_builder.validate(num_subjects)
        logger.info("\n" + self.design_builder.summary())

    def _load_design(self) -> DesignMatrixBuilder:
        design = self.design
        design_config = self.config.get("design", {})

        if isinstance(design, (str, Path)) and Path(design).suffix.lower() in PARTICIPANTS_EXTENSIONS:
            path = Path(design)
            if not path.exists():
                raise FileNotFoundError(f"Participants file not found: {path}")
            design = pd.read_csv(path, sep=PARTICIPANTS_EXTENSIONS[path.suffix.lower()])

        if isinstance(design, pd.DataFrame) and design_config.get("columns"):
            builder = DesignMatrixBuilder(design)
            builder.build_design_matrix(
                columns=design_config["columns"],
                add_intercept=design_config.get("add_intercept", True),
                categorical_columns=design_config.get("categorical_columns"),
                standardize_continuous=design_config.get("standardize_continuous", True),
            )
            return builder

        builder = DesignMatrixBuilder()
        if isinstance(design, (str, Path)):
            builder.load_design(design)
        elif isinstance(design, pd.DataFrame):
            numeric = design.select_dtypes(include=[np.number])
            if numeric.shape[1] != design.shape[1]:
                raise ValueError(
                    "Participants table contains non-numeric columns; "
                    "select regressors with the design.columns setting (--regressors)"
                )
            builder.set_design_matrix(numeric)
        else:
            builder.set_design_matrix(design)
        return builder

    def _load_permutations(self, num_subjects: int) -> None:
        inference = self.config.get("inference", {})
        random_state = self.config.get("random_state")

        if not inference.get("notest", False):
            if inference.get("permutations_file"):
                self.permutations = PermutationStack.from_file(
                    inference["permutations_file"], num_subjects, "Running permutations"
                )
            else:
                self.permutations = PermutationStack.generate(
                    inference.get("n_permutations", 5000),
                    num_subjects,
                    "Running permutations",
                    include_default=True,
                    random_state=random_state,
                )

        if inference.get("nonstationary", False):
            if inference.get("permutations_nonstationary_file"):
                self.nonstationary_permutations = PermutationStack.from_file(
                    inference["permutations_nonstationary_file"],
                    num_subjects,
                    "Pre-computing empirical statistic for non-stationarity adjustment",
                )
            else:
                self.nonstationary_permutations = PermutationStack.generate(
                    inference.get("n_permutations_nonstationary", 5000),
                    num_subjects,
                    "Pre-computing empirical statistic for non-stationarity adjustment",
                    include_default=False,
                    random_state=None if random_state is None else random_state + 1,
                )
        elif inference.get("permutations_nonstationary_file"):
            logger.warning(
                "Nonstationarity permutations file ignored: nonstationarity "
                "adjustment is not enabled (--nonstationary)"
            )

    def _load_contrasts(self) -> None:
        contrast = self.contrast
        if isinstance(contrast, (str, Path)):
            self.design_builder.load_contrasts(contrast)
        elif isinstance(contrast, (list, tuple)) and contrast and isinstance(contrast[0], (str, dict)):
            self.design_builder.add_contrasts_from_config(list(contrast))
        else:
            self.design_builder.set_contrasts(contrast)

    # ------------------------------------------------------------------
    # Connectivity and data
    # ------------------------------------------------------------------

    def compute_connectivity(self) -> None:
        """Build and normalize fixel-fixel connectivity from the track file."""
        template = self.data_loader.template
        conn_config = self.config.get("connectivity", {})

        raw, tdi = build_connectivity(
            template,
            str(self.tracks),
            angular_threshold=conn_config.get("angle", 45.0),
            min_streamlines=conn_config.get("min_streamlines", 1000000),
            upsample_fraction=conn_config.get("upsample_fraction", 0.333),
            n_jobs=self.config.get("n_jobs", 1),
            progress=self._progress,
        )

        self.connectivity, self.smoothing_weights = normalize_connectivity(
            raw,
            tdi,
            template.positions,
            connectivity_threshold=conn_config.get("threshold", 0.01),
            smoothing_fwhm=conn_config.get("smoothing_fwhm", 10.0),
            cfe_c=self.config.get("cfe.c", 0.5),
        )

        self.enhancer = CFEEnhancer(
            self.connectivity,
            dh=self.config.get("cfe.dh", 0.1),
            e=self.config.get("cfe.e", 2.0),
            h=self.config.get("cfe.h", 3.0),
        )

    def load_data(self) -> np.ndarray:
        """Smooth the subject fixel data along the fibre tracts."""
        logger.info("Smoothing fixel data along fibre tracts")
        self.data, self.nans_in_data = smooth_fixel_data(self._subject_data, self.smoothing_weights)
        return self.data

    def build_glm(self) -> GLMTestBase:
        """Select the fixed or variable design t-test."""
        design = self.design_builder.get_design_array()
        contrasts = self.design_builder.get_contrast_matrix()

        if self._element_columns or self.nans_in_data:
            logger.info("Using fixel-wise design matrices")
            self.glm_test = GLMTTestVariable(self.data, design, contrasts, self._element_columns)
        else:
            logger.info("Using a single design matrix for all fixels")
            self.glm_test = GLMTTestFixed(self.data, design, contrasts)
        return self.glm_test

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def _metadata(self) -> Dict[str, Any]:
        inference = self.config.get("inference", {})
        num_perms = 0 if inference.get("notest") else len(self.permutations)
        return {
            "NumPermutations": num_perms,
            "CFE_dh": self.config.get("cfe.dh"),
            "CFE_E": self.config.get("cfe.e"),
            "CFE_H": self.config.get("cfe.h"),
            "CFE_C": self.config.get("cfe.c"),
            "AngularThreshold": self.config.get("connectivity.angle"),
            "ConnectivityThreshold": self.config.get("connectivity.threshold"),
            "SmoothingFWHM": self.config.get("connectivity.smoothing_fwhm"),
            "NonstationaryAdjustment": bool(inference.get("nonstationary", False)),
        }

    def _generate_json_sidecar(self, nifti_path: Path, description: str) -> Path:
        """
        Generate JSON sidecar for a fixel data file.

        Parameters
        ----------
        nifti_path : Path
            Path to the NIfTI file.
        description : str
            Human-readable description of the stored values.

        Returns
        -------
        Path
            Path to the JSON sidecar file.
        """
        json_path = nifti_path.with_suffix("").with_suffix(".json")

        metadata = {
            "Description": description,
            "NumberOfSubjects": self.num_subjects,
            "NumberOfFixels": self.data_loader.template.num_fixels,
            "Software": "FixelStats",
            "SoftwareVersion": __version__,
        }
        metadata.update(self._metadata())

        with open(json_path, "w") as f:
            json.dump(metadata, f, indent=2)

        logger.debug(f"Created JSON sidecar: {json_path}")
        return json_path

    def _write_fixel_output(self, name: str, values: np.ndarray, description: str) -> Path:
        """Write one value per fixel as a fixel data file in the output directory."""
        values = np.asarray(values, dtype=np.float32).reshape(-1, 1, 1)
        path = self.output_dir / f"{name}.nii.gz"
        nib.save(nib.Nifti1Image(values, np.eye(4)), str(path))
        self._generate_json_sidecar(path, description)

        self.results[name] = values.reshape(-1)
        self.saved_files[name] = path
        logger.debug(f"Saved {path}")
        return path

    def compute_default_properties(self) -> Dict[str, np.ndarray]:
        """
        Compute and save betas, effect sizes and standard deviation.

        Returns
        -------
        dict
            Output of :func:`fixelstats.core.glm.all_stats` over all fixels.
        """
        logger.info("Calculating beta coefficients, effect sizes and standard deviations")
        contrasts = self.design_builder.get_contrast_matrix()

        if isinstance(self.glm_test, GLMTTestVariable):
            stats = self.glm_test.default_stats()
        else:
            stats = all_stats(self.data, self.design_builder.get_design_array(), contrasts)

        names = self.design_builder.column_names
        for i, beta in enumerate(stats["betas"]):
            self._write_fixel_output(f"beta{i}", beta, f"Beta coefficient of design column {names[i]}")

        for c in range(self.num_contrasts):
            postfix = self._postfix(c)
            self._write_fixel_output(
                f"abs_effect{postfix}", stats["abs_effect"][c], f"Absolute effect size of contrast {c}"
            )
            self._write_fixel_output(
                f"std_effect{postfix}", stats["std_effect"][c], f"Standardized effect size of contrast {c}"
            )
            self._write_fixel_output(
                f"std_dev{postfix}", stats["std_dev"][c], "Pooled standard deviation of the residuals"
            )
        return stats

    def run_inference(self) -> Dict[str, np.ndarray]:
        """
        Enhance the default statistic and run the permutation test.

        Returns
        -------
        dict
            'cfe', 'tvalue' and, unless testing is disabled,
            'null_distribution', 'fwe_pvalue' and 'uncorrected_pvalue'
            (all with a leading contrast axis).
        """
        n_jobs = self.config.get("n_jobs", 1)
        inference = {}

        empirical = None
        if self.nonstationary_permutations is not None:
            empirical = precompute_empirical_stat(
                self.glm_test, self.enhancer, self.nonstationary_permutations,
                n_jobs=n_jobs, progress=self._progress,
            )
            inference["cfe_empirical"] = empirical
            for c in range(self.num_contrasts):
                self._write_fixel_output(
                    f"cfe_empirical{self._postfix(c)}", empirical[c],
                    "Empirical CFE statistic for nonstationarity adjustment",
                )

        logger.info("Running GLM and enhancement algorithm for default permutation")
        default_enhanced, tvalues = precompute_default_permutation(self.glm_test, self.enhancer, empirical)
        inference["cfe"] = default_enhanced
        inference["tvalue"] = tvalues
        for c in range(self.num_contrasts):
            postfix = self._postfix(c)
            self._write_fixel_output(f"cfe{postfix}", default_enhanced[c], "CFE-enhanced t statistic")
            self._write_fixel_output(f"tvalue{postfix}", tvalues[c], "t statistic")

        if self.config.get("inference.notest", False):
            logger.info("Permutation testing disabled; skipping")
            return inference

        null_distribution, uncorrected = run_permutations(
            self.permutations, self.glm_test, self.enhancer, empirical, default_enhanced,
            n_jobs=n_jobs, progress=self._progress,
        )
        fwe = statistic2pvalue(null_distribution, default_enhanced)

        inference.update({
            "null_distribution": null_distribution,
            "fwe_pvalue": fwe,
            "uncorrected_pvalue": uncorrected,
        })

        for c in range(self.num_contrasts):
            postfix = self._postfix(c)
            dist_path = self.output_dir / f"perm_dist{postfix}.txt"
            np.savetxt(dist_path, null_distribution[c])
            self.saved_files[f"perm_dist{postfix}"] = dist_path
            self._write_fixel_output(f"fwe_pvalue{postfix}", fwe[c], "Family-wise error corrected p-value")
            self._write_fixel_output(
                f"uncorrected_pvalue{postfix}", uncorrected[c], "Uncorrected p-value"
            )
            logger.info(
                f"Contrast {c}: {int(np.sum(fwe[c] < 0.05))} fixels significant at FWE p < 0.05"
            )

        return inference

    def run(self) -> Dict[str, Any]:
        """
        Run the complete analysis pipeline.

        Returns
        -------
        dict
            Dictionary with the computed arrays ('default_stats',
            'inference') and the written files ('saved_files').
        """
        logger.info("Starting FixelStats pipeline...")
        logger.info("\n" + self.config.summary())

        self.load_inputs()

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.data_loader.copy_index_and_directions(self.output_dir)
        config_path = self.output_dir / "config.yaml"
        self.config.save_to_file(config_path)
        self.saved_files["config"] = config_path

        self.compute_connectivity()
        self.load_data()
        self.build_glm()

        default_stats = self.compute_default_properties()
        inference = self.run_inference()

        logger.info("FixelStats pipeline completed")
        return {
            "default_stats": default_stats,
            "inference": inference,
            "saved_files": dict(self.saved_files),
        }
