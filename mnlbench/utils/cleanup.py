"""
Cleanup utilities for Biogeme estimation artifacts.

Biogeme writes report files named after the model into the working
directory on every estimate() call. The benchmark fits thousands of
throwaway models, so these are removed right after each estimation.
"""

from pathlib import Path
from typing import List, Optional, Union


ARTIFACT_SUFFIXES = ('.html', '.yaml', '.pickle', '.iter', '.tex', '.F12')


def remove_estimation_artifacts(model_name: str,
                                directory: Optional[Union[str, Path]] = None,
                                verbose: bool = False) -> List[Path]:
    """
    Remove report files Biogeme produced for one model.

    Covers backup names such as ``Model~00.html`` and the ``__Model.iter``
    iteration file.

    Args:
        model_name: Biogeme model_name used for the estimation
        directory: Folder to clean (defaults to the working directory)
        verbose: Whether to print cleanup messages

    Returns:
        List of removed paths
    """
    directory = Path(directory) if directory is not None else Path.cwd()
    removed = []

    for f in directory.glob(f"*{model_name}*"):
        if f.is_file() and f.suffix in ARTIFACT_SUFFIXES:
            f.unlink(missing_ok=True)
            removed.append(f)
            if verbose:
                print(f"  Removed: {f.name}")

    return removed
