"""Terrapack: terrain packages for wildfire simulation.

Given a rectangular area of interest in Lambert-93 (EPSG:2154), terrapack
acquires the French public survey datasets covering it (BD TOPO, BD Foret,
RPG) for every department the area touches, clips and merges them into a
fixed set of thematic layers on a 10 m grid, and exports the result as a
tiled bundle a fire-spread simulator can load.

- Source archives are downloaded once per department and shared by every
  project through a verified on-disk cache
- Layers are clipped exactly to the area; features duplicated between two
  departmental datasets are kept once
- The land-cover raster classifies each pixel by majority area with a
  configurable class priority
- Exports are written atomically: the bundle appears complete or not at all

See the module docstrings of terrapack.services for the pipeline stages.
"""
