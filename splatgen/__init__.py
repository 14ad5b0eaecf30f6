"""
Single-Image Gaussian Splat Generator

Runs a depth/3D reconstruction model on one image and streams its raw
per-point outputs into a Gaussian splat PLY.

Pipeline stages:
1. Resources - Stage the model into the local cache
2. Session - Load an inference session for an execution backend
3. Schema - Bind declared inputs/outputs to semantic roles
4. Input - Decode and resize the image, build input features
5. Predict - Run the model with backend fallback
6. Assemble - Clamp, normalize and encode each point
7. Write - Stream points into the PLY in batches
"""

__version__ = "0.1.0"
