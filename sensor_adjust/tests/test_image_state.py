"""
Tests for storing CSM states in image metadata.
"""

import json

import pytest
import numpy as np
import rasterio

from sensor_adjust.csm import FRAME_MODEL_NAME, CsmFrameModel
from sensor_adjust.image_state import (
    MODEL_NAME_TAG,
    MODEL_STATE_TAG,
    PLUGIN_NAME_TAG,
    read_csm_state_from_image,
    save_camera_state_to_image,
    save_csm_state_to_image,
)


@pytest.fixture
def image_path(tmp_path):
    """A small GeoTIFF with a legacy pointing tag."""
    path = tmp_path / 'image.tif'
    with rasterio.open(path, 'w', driver='GTiff', height=8, width=8, count=1,
                       dtype='uint8') as dst:
        dst.write(np.zeros((1, 8, 8), dtype=np.uint8))
        dst.update_tags(INSTRUMENT_POINTING='0 0 0 1', SENSOR='test')
    return path


def test_no_state(image_path):
    assert read_csm_state_from_image(image_path) == {}


def test_save_state(image_path):
    save_csm_state_to_image(image_path, 'plugin', 'model', '{"a": 1}')

    tags = read_csm_state_from_image(image_path)
    assert tags[PLUGIN_NAME_TAG] == 'plugin'
    assert tags[MODEL_NAME_TAG] == 'model'
    assert tags[MODEL_STATE_TAG] == '{"a": 1}'

    with rasterio.open(image_path) as src:
        default_tags = src.tags()
        assert default_tags.get('INSTRUMENT_POINTING', '') == ''
        assert default_tags['SENSOR'] == 'test'
        assert src.read(1).shape == (8, 8)


def test_save_camera(image_path, frame_model):
    save_camera_state_to_image(image_path, frame_model)

    tags = read_csm_state_from_image(image_path)
    assert tags[MODEL_NAME_TAG] == FRAME_MODEL_NAME
    state = json.loads(tags[MODEL_STATE_TAG])
    back = CsmFrameModel.from_state(state)
    np.testing.assert_allclose(back.position, frame_model.position)


def test_missing_image(tmp_path):
    with pytest.raises(FileNotFoundError):
        save_csm_state_to_image(tmp_path / 'none.tif', 'plugin', 'model', '{}')
