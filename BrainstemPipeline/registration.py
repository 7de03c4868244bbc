from __future__ import annotations

import math
from pathlib import Path
from typing import List, Sequence

import SimpleITK as sitk


def resample_to_spacing(image: sitk.Image, *, spacing_mm: float, interpolator: int = sitk.sitkLinear) -> sitk.Image:
    """Resample onto an isotropic grid covering the same physical extent."""
    spacing = image.GetSpacing()
    new_spacing = tuple(float(spacing_mm) for _ in spacing)
    if all(abs(ns - s) < 1e-6 for ns, s in zip(new_spacing, spacing)):
        return image

    size = image.GetSize()
    new_size = [
        max(1, int(round(size[i] * spacing[i] / new_spacing[i])))
        for i in range(image.GetDimension())
    ]
    resample = sitk.ResampleImageFilter()
    resample.SetInterpolator(interpolator)
    resample.SetOutputSpacing(new_spacing)
    resample.SetSize(new_size)
    resample.SetOutputOrigin(image.GetOrigin())
    resample.SetOutputDirection(image.GetDirection())
    resample.SetDefaultPixelValue(0.0)
    resample.SetTransform(sitk.Transform(image.GetDimension(), sitk.sitkIdentity))
    resample.SetOutputPixelType(image.GetPixelID())
    return resample.Execute(image)


def _downsample_to_spacing(image: sitk.Image, *, target_spacing_mm: float) -> sitk.Image:
    spacing = image.GetSpacing()
    if all(float(s) >= float(target_spacing_mm) - 1e-6 for s in spacing):
        return image
    size = image.GetSize()
    new_spacing = tuple(max(float(s), float(target_spacing_mm)) for s in spacing)
    new_size = [max(1, int(math.ceil(size[i] * spacing[i] / new_spacing[i]))) for i in range(image.GetDimension())]
    return sitk.Resample(
        image,
        new_size,
        sitk.Transform(image.GetDimension(), sitk.sitkIdentity),
        sitk.sitkLinear,
        image.GetOrigin(),
        new_spacing,
        image.GetDirection(),
        0.0,
        sitk.sitkFloat32,
    )


def _prepare_for_registration(image: sitk.Image, *, target_spacing_mm: float) -> sitk.Image:
    img = sitk.Cast(image, sitk.sitkFloat32)
    img = sitk.RescaleIntensity(img, 0.0, 1.0)
    return _downsample_to_spacing(img, target_spacing_mm=target_spacing_mm)


def _registration_method(
    *,
    iterations: int,
    sampling_percentage: float,
    shrink_factors: Sequence[int],
    smoothing_sigmas: Sequence[float],
) -> sitk.ImageRegistrationMethod:
    registration = sitk.ImageRegistrationMethod()
    registration.SetInterpolator(sitk.sitkLinear)
    registration.SetMetricAsMattesMutualInformation(numberOfHistogramBins=50)
    registration.SetMetricSamplingStrategy(registration.RANDOM)
    registration.SetMetricSamplingPercentage(float(sampling_percentage), seed=42)
    registration.SetShrinkFactorsPerLevel([int(v) for v in shrink_factors])
    registration.SetSmoothingSigmasPerLevel([float(v) for v in smoothing_sigmas])
    registration.SmoothingSigmasAreSpecifiedInPhysicalUnitsOn()
    registration.SetOptimizerAsGradientDescentLineSearch(
        learningRate=1.0,
        numberOfIterations=int(iterations),
        convergenceMinimumValue=1e-6,
        convergenceWindowSize=10,
    )
    registration.SetOptimizerScalesFromPhysicalShift()
    return registration


def _register_linear_transform(
    fixed: sitk.Image,
    moving: sitk.Image,
    transform: sitk.Transform,
    *,
    iterations: int,
    sampling_percentage: float,
    shrink_factors: Sequence[int],
    smoothing_sigmas: Sequence[float],
) -> sitk.Transform:
    initial = sitk.CenteredTransformInitializer(
        fixed,
        moving,
        transform,
        sitk.CenteredTransformInitializerFilter.GEOMETRY,
    )
    registration = _registration_method(
        iterations=iterations,
        sampling_percentage=sampling_percentage,
        shrink_factors=shrink_factors,
        smoothing_sigmas=smoothing_sigmas,
    )
    registration.SetInitialTransform(initial, inPlace=False)
    return registration.Execute(fixed, moving)


def register_rigid(
    fixed: sitk.Image,
    moving: sitk.Image,
    *,
    iterations: int = 100,
    sampling_percentage: float = 0.1,
    shrink_factors: Sequence[int] = (4, 2, 1),
    smoothing_sigmas: Sequence[float] = (2.0, 1.0, 0.0),
    registration_spacing_mm: float = 2.0,
) -> sitk.Transform:
    """Rigid (Euler3D) fixed->moving transform estimated with Mattes MI."""
    fixed_ds = _prepare_for_registration(fixed, target_spacing_mm=registration_spacing_mm)
    moving_ds = _prepare_for_registration(moving, target_spacing_mm=registration_spacing_mm)
    return _register_linear_transform(
        fixed_ds,
        moving_ds,
        sitk.Euler3DTransform(),
        iterations=iterations,
        sampling_percentage=sampling_percentage,
        shrink_factors=shrink_factors,
        smoothing_sigmas=smoothing_sigmas,
    )


def register_affine(
    fixed: sitk.Image,
    moving: sitk.Image,
    *,
    iterations: int = 100,
    sampling_percentage: float = 0.1,
    shrink_factors: Sequence[int] = (4, 2, 1),
    smoothing_sigmas: Sequence[float] = (2.0, 1.0, 0.0),
    registration_spacing_mm: float = 2.0,
) -> sitk.Transform:
    fixed_ds = _prepare_for_registration(fixed, target_spacing_mm=registration_spacing_mm)
    moving_ds = _prepare_for_registration(moving, target_spacing_mm=registration_spacing_mm)
    return _register_linear_transform(
        fixed_ds,
        moving_ds,
        sitk.AffineTransform(fixed.GetDimension()),
        iterations=iterations,
        sampling_percentage=sampling_percentage,
        shrink_factors=shrink_factors,
        smoothing_sigmas=smoothing_sigmas,
    )


def register_affine_bspline(
    fixed: sitk.Image,
    moving: sitk.Image,
    *,
    iterations: int = 100,
    sampling_percentage: float = 0.1,
    shrink_factors: Sequence[int] = (4, 2, 1),
    smoothing_sigmas: Sequence[float] = (2.0, 1.0, 0.0),
    bspline_mesh_size: int = 6,
    registration_spacing_mm: float = 2.0,
) -> sitk.Transform:
    """Affine initialisation followed by a B-spline refinement.

    Returns a composite transform (affine applied after the B-spline) mapping
    fixed points into the moving image.
    """
    affine = register_affine(
        fixed,
        moving,
        iterations=iterations,
        sampling_percentage=sampling_percentage,
        shrink_factors=shrink_factors,
        smoothing_sigmas=smoothing_sigmas,
        registration_spacing_mm=registration_spacing_mm,
    )
    fixed_ds = _prepare_for_registration(fixed, target_spacing_mm=registration_spacing_mm)
    moving_ds = _prepare_for_registration(moving, target_spacing_mm=registration_spacing_mm)

    bspline = sitk.BSplineTransformInitializer(fixed_ds, [int(bspline_mesh_size)] * fixed_ds.GetDimension())
    registration = sitk.ImageRegistrationMethod()
    registration.SetInterpolator(sitk.sitkLinear)
    registration.SetMetricAsMattesMutualInformation(numberOfHistogramBins=50)
    registration.SetMetricSamplingStrategy(registration.RANDOM)
    registration.SetMetricSamplingPercentage(float(sampling_percentage), seed=42)
    registration.SetShrinkFactorsPerLevel([int(v) for v in shrink_factors])
    registration.SetSmoothingSigmasPerLevel([float(v) for v in smoothing_sigmas])
    registration.SmoothingSigmasAreSpecifiedInPhysicalUnitsOn()
    registration.SetOptimizerAsLBFGSB(
        gradientConvergenceTolerance=1e-5,
        numberOfIterations=int(iterations),
        maximumNumberOfCorrections=5,
        maximumNumberOfFunctionEvaluations=1000,
        costFunctionConvergenceFactor=1e7,
    )
    registration.SetMovingInitialTransform(affine)
    registration.SetInitialTransform(bspline, inPlace=True)
    registration.Execute(fixed_ds, moving_ds)

    composite = sitk.CompositeTransform(fixed.GetDimension())
    composite.AddTransform(affine)
    composite.AddTransform(bspline)
    return composite


def resample_with_transform(
    moving: sitk.Image,
    reference: sitk.Image,
    transform: sitk.Transform,
    *,
    interpolator: int = sitk.sitkLinear,
    pixel_type: int = sitk.sitkFloat32,
) -> sitk.Image:
    resample = sitk.ResampleImageFilter()
    resample.SetReferenceImage(reference)
    resample.SetTransform(transform)
    resample.SetInterpolator(interpolator)
    resample.SetDefaultPixelValue(0.0)
    resample.SetOutputPixelType(pixel_type)
    return resample.Execute(moving)


def _settings(params: dict) -> dict:
    keys = (
        "iterations",
        "sampling_percentage",
        "shrink_factors",
        "smoothing_sigmas",
        "registration_spacing_mm",
    )
    return {k: params[k] for k in keys if k in params}


def _write_registration(
    fixed: sitk.Image,
    moving: sitk.Image,
    transform: sitk.Transform,
    outputs: Sequence[Path],
) -> List[Path]:
    warped_path, transform_path = Path(outputs[0]), Path(outputs[1])
    warped_path.parent.mkdir(parents=True, exist_ok=True)
    warped = resample_with_transform(moving, fixed, transform)
    sitk.WriteImage(warped, str(warped_path), True)
    sitk.WriteTransform(transform, str(transform_path))
    return [warped_path, transform_path]


def register_nonlinear_op(inputs: Sequence[Path], outputs: Sequence[Path], **params) -> List[Path]:
    """inputs: (fixed, moving); outputs: (warped moving, transform file)."""
    fixed = sitk.ReadImage(str(inputs[0]), sitk.sitkFloat32)
    moving = sitk.ReadImage(str(inputs[1]), sitk.sitkFloat32)
    transform = register_affine_bspline(
        fixed,
        moving,
        bspline_mesh_size=int(params.get("bspline_mesh_size", 6)),
        **_settings(params),
    )
    return _write_registration(fixed, moving, transform, outputs)


def register_linear_op(inputs: Sequence[Path], outputs: Sequence[Path], **params) -> List[Path]:
    fixed = sitk.ReadImage(str(inputs[0]), sitk.sitkFloat32)
    moving = sitk.ReadImage(str(inputs[1]), sitk.sitkFloat32)
    transform = register_rigid(fixed, moving, **_settings(params))
    return _write_registration(fixed, moving, transform, outputs)


def apply_transform_op(inputs: Sequence[Path], outputs: Sequence[Path], interpolator: str = "linear") -> List[Path]:
    """inputs: (moving, reference, transform file); nearest-neighbour output is UINT8."""
    moving = sitk.ReadImage(str(inputs[0]))
    reference = sitk.ReadImage(str(inputs[1]))
    transform = sitk.ReadTransform(str(inputs[2]))
    if interpolator == "nearest":
        out = resample_with_transform(moving, reference, transform, interpolator=sitk.sitkNearestNeighbor, pixel_type=sitk.sitkUInt8)
    else:
        out = resample_with_transform(moving, reference, transform)
    out_path = Path(outputs[0])
    out_path.parent.mkdir(parents=True, exist_ok=True)
    sitk.WriteImage(out, str(out_path), True)
    return [out_path]


def standardize_dimensions_op(inputs: Sequence[Path], outputs: Sequence[Path], spacing_mm: float = 1.0, interpolator: str = "linear") -> List[Path]:
    image = sitk.ReadImage(str(inputs[0]))
    interp = sitk.sitkNearestNeighbor if interpolator == "nearest" else sitk.sitkLinear
    out = resample_to_spacing(image, spacing_mm=float(spacing_mm), interpolator=interp)
    out_path = Path(outputs[0])
    out_path.parent.mkdir(parents=True, exist_ok=True)
    sitk.WriteImage(out, str(out_path), True)
    return [out_path]
