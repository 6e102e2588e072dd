"""Orthophoto raster of a project, fetched from the IGN WMS.

GDAL's WMS driver reads a small XML service description; translating that
description with ``gdal_translate`` downloads the imagery of the data
window at the requested size. The window is the area of interest and the
size its pixel dimensions, so the result lands exactly on the project's
10 m grid.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from xml.sax import saxutils

from terrapack.core import errors
from terrapack.core import retry as core_retry
from terrapack.db import models
from terrapack.utils import gdal_helpers

if TYPE_CHECKING:
    import pathlib

    from terrapack.core import config

logger = logging.getLogger(__name__)

WMS_TEMPLATE = """<GDAL_WMS>
  <Service name="WMS">
    <Version>1.3.0</Version>
    <ServerUrl>{server}</ServerUrl>
    <CRS>{crs}</CRS>
    <ImageFormat>image/jpeg</ImageFormat>
    <Layers>{layer}</Layers>
    <Styles></Styles>
  </Service>
  <DataWindow>
    <UpperLeftX>{xmin}</UpperLeftX>
    <UpperLeftY>{ymax}</UpperLeftY>
    <LowerRightX>{xmax}</LowerRightX>
    <LowerRightY>{ymin}</LowerRightY>
    <SizeX>{width}</SizeX>
    <SizeY>{height}</SizeY>
  </DataWindow>
  <BandsCount>3</BandsCount>
  <BlockSizeX>2048</BlockSizeX>
  <BlockSizeY>2048</BlockSizeY>
  <OverviewCount>0</OverviewCount>
  <ZeroBlockHttpCodes>204,400,404,502,503,504</ZeroBlockHttpCodes>
  <MaxConnections>10</MaxConnections>
  <Timeout>120</Timeout>
  <Cache>
    <Type>Disk</Type>
    <Path>{cache}</Path>
  </Cache>
  <Retry>
    <Count>5</Count>
    <Delay>1</Delay>
  </Retry>
</GDAL_WMS>
"""


def wms_description(
    aoi: models.AreaOfInterest,
    settings: config.Settings,
    cache_dir: pathlib.Path,
) -> str:
    """Render the GDAL WMS description covering an area of interest."""
    return WMS_TEMPLATE.format(
        server=saxutils.escape(str(settings.wms_url)),
        crs=models.CRS,
        layer=saxutils.escape(settings.wms_layer),
        xmin=aoi.xmin,
        ymin=aoi.ymin,
        xmax=aoi.xmax,
        ymax=aoi.ymax,
        width=aoi.width_px,
        height=aoi.height_px,
        cache=saxutils.escape(str(cache_dir)),
    )


def fetch_orthophoto(
    aoi: models.AreaOfInterest,
    workdir: pathlib.Path,
    settings: config.Settings,
    policy: core_retry.RetryPolicy | None = None,
) -> models.Layer:
    """Download the orthophoto of an area as a JPEG-compressed GeoTIFF.

    Blocking; retried under the export policy (three attempts five seconds
    apart by default) since the WMS occasionally drops requests.

    Args:
        aoi: Area of interest.
        workdir: Project directory; the raster goes to ``layers/``.
        settings: Settings (WMS endpoint, GDAL location).
        policy: Retry policy, defaults to RetryPolicy.for_exports(settings).

    Returns:
        The "orthophoto" raster layer.

    Raises:
        AcquisitionError: if every attempt failed.
    """
    policy = policy or core_retry.RetryPolicy.for_exports(settings)
    layers_dir = workdir / "layers"
    layers_dir.mkdir(parents=True, exist_ok=True)
    description = workdir / "scratch" / "orthophoto_wms.xml"
    description.parent.mkdir(parents=True, exist_ok=True)
    description.write_text(
        wms_description(aoi, settings, settings.cache_dir / "wms"),
        encoding="utf-8",
    )
    output = layers_dir / "orthophoto.tif"

    def translate() -> None:
        gdal_helpers.run_command(
            [
                "gdal_translate",
                "-of",
                "GTiff",
                "-a_srs",
                models.CRS,
                "-co",
                "COMPRESS=JPEG",
                "-co",
                "JPEG_QUALITY=95",
                "-co",
                "PHOTOMETRIC=YCBCR",
                "-co",
                "TILED=YES",
                "-co",
                "BIGTIFF=IF_SAFER",
                description,
                output,
            ],
            bin_dir=settings.gdal_bin_dir,
        )

    outcome = policy.run_sync(translate, label="Orthophoto download")
    if not outcome.ok:
        raise errors.AcquisitionError("wms", "orthophoto", outcome.error)
    logger.info("Orthophoto written to %s", output)
    return models.Layer(
        name="orthophoto",
        kind="raster",
        path=str(output),
        extent=aoi.bounds,
        resolution=models.RESOLUTION,
    )
