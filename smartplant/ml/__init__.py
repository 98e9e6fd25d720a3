# ML module: the classifier runs only inside the worker process (python -m smartplant.ml.worker)
