# run.py
import uvicorn
import logging
logging.basicConfig(level=logging.INFO)
logging.getLogger("feed").setLevel(logging.WARNING)

uvicorn.run("plc_visualizer.main:app", host="0.0.0.0", port=8080, reload=False)
