"""
MODNet background removal microservice package.

Exposes reusable primitives for provisioning the model, preprocessing images,
running inference, compositing the transparent result, and serving the
FastAPI application.
"""
