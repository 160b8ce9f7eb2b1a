"""The concrete provisioning plans: validation, image and pool."""

from batch_prep.plans.image import build_image_plan
from batch_prep.plans.pool import build_pool_plan
from batch_prep.plans.validation import build_validation_plan

__all__ = ["build_image_plan", "build_pool_plan", "build_validation_plan"]
