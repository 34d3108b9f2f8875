"""
splatpipe

Turns a video into a Gaussian splat point cloud by orchestrating external
tools, driven by a JSON (with comments) config.

Pipeline stages:
1. Extract - ffmpeg frame extraction (skipped when frames already exist)
2. Reconstruct - COLMAP automatic or manual SfM, then undistortion
3. Train - LichtFeld or Nerfstudio (with data preparation)
4. Export - <project>_gaussians.ply + output/result.json manifest
"""

__version__ = "0.1.0"
