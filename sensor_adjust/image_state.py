"""
Store the updated CSM state of a camera in the metadata of its image.

The state goes into GDAL metadata tags, in the CSM namespace. Legacy
ephemeris tags from the image are blanked so that readers do not mix
the old pointing with the new state.
"""

from pathlib import Path
from typing import Dict
import logging

import rasterio

logger = logging.getLogger(__name__)

CSM_TAG_NAMESPACE = 'CSM'
PLUGIN_NAME_TAG = 'CSM_PLUGIN_NAME'
MODEL_NAME_TAG = 'CSM_MODEL_NAME'
MODEL_STATE_TAG = 'CSM_MODEL_STATE'

# Pointing and ephemeris tags that the CSM state supersedes
LEGACY_EPHEMERIS_TAGS = ('INSTRUMENT_POINTING', 'INSTRUMENT_POSITION',
                         'BODY_ROTATION', 'SUN_POSITION')


def save_csm_state_to_image(image_path, plugin_name: str, model_name: str,
                            model_state: str) -> None:
    """
    Write a CSM model state into an existing image file.

    Args:
        image_path: Image to update in place
        plugin_name: CSM plugin name
        model_name: CSM model name
        model_state: Serialized model state

    Raises:
        FileNotFoundError: if the image does not exist
    """
    image_path = Path(image_path)
    if not image_path.exists():
        raise FileNotFoundError(f"Image not found: {image_path}")

    logger.info(f"Adding updated CSM state to image file: {image_path}")
    with rasterio.open(image_path, 'r+') as dst:
        dst.update_tags(ns=CSM_TAG_NAMESPACE, **{
            PLUGIN_NAME_TAG: plugin_name,
            MODEL_NAME_TAG: model_name,
            MODEL_STATE_TAG: model_state,
        })

        legacy = dst.tags()
        blanked = {tag: '' for tag in LEGACY_EPHEMERIS_TAGS if legacy.get(tag)}
        if blanked:
            logger.debug(f"Blanking legacy ephemeris tags: {', '.join(sorted(blanked))}")
            dst.update_tags(**blanked)


def read_csm_state_from_image(image_path) -> Dict[str, str]:
    """CSM tags of an image. Empty if it has none."""
    with rasterio.open(image_path) as src:
        return src.tags(ns=CSM_TAG_NAMESPACE)


def save_camera_state_to_image(image_path, camera) -> None:
    """Write the state of a CSM camera model into its image."""
    save_csm_state_to_image(image_path, camera.plugin_name, camera.model_name,
                            camera.model_state())
