"""PersonaChat core: prompt assembly, backend adapters and the generation facade."""
